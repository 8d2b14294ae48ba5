"""
Loopback Broker - in-process implementation of the broker client contract

Every node address of a loopback cluster maps to a view of one shared
LoopbackBroker, so a stream created through one node is visible through
any other. Implements ack-timeout redelivery, explicit nack, ordering-key
exclusivity within a consumer group, record-size limits and the
not-found / already-exists failure contract.
"""
import time
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Set, Tuple
from ..models import Record, RecordId, Delivery, SubscriptionSpec, MAX_RECORD_SIZE
from .base import (
    BaseBrokerClient, StreamNotFoundError, StreamAlreadyExistsError,
    SubscriptionNotFoundError, SubscriptionAlreadyExistsError,
    RecordTooLargeError, ConsumerStateError
)

logger = logging.getLogger(__name__)

# Upper bound on a single condition wait, so ack timeouts are noticed while fetching
FETCH_WAIT_SLICE = 0.05


@dataclass
class _PendingDelivery:
    owner: str
    deadline: float


@dataclass
class _SubscriptionState(SubscriptionSpec):
    cursor: int = 0
    members: List[str] = field(default_factory=list)
    backlog: Deque[RecordId] = field(default_factory=deque)
    redeliver: Deque[RecordId] = field(default_factory=deque)
    pending: Dict[RecordId, _PendingDelivery] = field(default_factory=dict)
    acked: Set[RecordId] = field(default_factory=set)
    delivery_counts: Dict[RecordId, int] = field(default_factory=dict)
    key_owner: Dict[str, str] = field(default_factory=dict)
    orphaned: bool = False


class LoopbackBroker:
    """Thread-safe in-memory broker shared by every node of a loopback cluster"""

    def __init__(self, max_record_size: int = MAX_RECORD_SIZE):
        self.max_record_size = max_record_size
        self._cond = threading.Condition()
        self._streams: Dict[str, List[Tuple[RecordId, Record]]] = {}
        self._records: Dict[RecordId, Record] = {}
        self._subscriptions: Dict[str, _SubscriptionState] = {}
        self._next_batch_id = 0
        self.stats = {'appends': 0, 'deliveries': 0, 'redeliveries': 0}

    def client(self, address: str = "loopback:0") -> "LoopbackClient":
        """Client view bound to one node address"""
        return LoopbackClient(self, address)

    def create_stream(self, name: str) -> None:
        with self._cond:
            if name in self._streams:
                raise StreamAlreadyExistsError(f"Stream {name} already exists")
            self._streams[name] = []
        logger.debug(f"Created stream {name}")

    def list_streams(self) -> List[str]:
        with self._cond:
            return sorted(self._streams)

    def delete_stream(self, name: str) -> None:
        with self._cond:
            if name not in self._streams:
                raise StreamNotFoundError(f"Stream {name} does not exist")
            for record_id, _ in self._streams.pop(name):
                self._records.pop(record_id, None)
            for sub in self._subscriptions.values():
                if sub.stream == name:
                    sub.orphaned = True
            self._cond.notify_all()
        logger.debug(f"Deleted stream {name}")

    def create_subscription(self, subscription_id: str, stream: str, ack_timeout: float = 60.0) -> None:
        with self._cond:
            if subscription_id in self._subscriptions:
                raise SubscriptionAlreadyExistsError(f"Subscription {subscription_id} already exists")
            if stream not in self._streams:
                raise StreamNotFoundError(f"Cannot subscribe {subscription_id} to missing stream {stream}")
            self._subscriptions[subscription_id] = _SubscriptionState(subscription_id, stream, ack_timeout)
        logger.debug(f"Created subscription {subscription_id} on {stream} (ack timeout {ack_timeout:.2f}s)")

    def list_subscriptions(self) -> List[str]:
        with self._cond:
            return sorted(self._subscriptions)

    def delete_subscription(self, subscription_id: str) -> None:
        with self._cond:
            if subscription_id not in self._subscriptions:
                raise SubscriptionNotFoundError(f"Subscription {subscription_id} does not exist")
            del self._subscriptions[subscription_id]
            self._cond.notify_all()

    def append(self, stream: str, records: List[Record]) -> List[RecordId]:
        """Write records as one atomic batch; ids increase in write order"""
        with self._cond:
            if stream not in self._streams:
                raise StreamNotFoundError(f"Stream {stream} does not exist")
            for record in records:
                if record.size > self.max_record_size:
                    raise RecordTooLargeError(
                        f"Record of {record.size} bytes exceeds the maximum of {self.max_record_size} bytes"
                    )
            if not records:
                return []

            batch_id = self._next_batch_id
            self._next_batch_id += 1
            record_ids = []
            for batch_index, record in enumerate(records):
                record_id = RecordId(batch_id, batch_index)
                self._streams[stream].append((record_id, record))
                self._records[record_id] = record
                record_ids.append(record_id)

            self.stats['appends'] += 1
            self._cond.notify_all()
            return record_ids

    def attach(self, subscription_id: str, member: str) -> None:
        with self._cond:
            sub = self._subscription(subscription_id)
            if member in sub.members:
                raise ConsumerStateError(f"{member} is already attached to {subscription_id}")
            sub.members.append(member)
        logger.debug(f"{member} attached to {subscription_id}")

    def detach(self, subscription_id: str, member: str) -> None:
        """Leave the group; the member's pending deliveries and keys go back to the pool"""
        with self._cond:
            sub = self._subscriptions.get(subscription_id)
            if sub is None or member not in sub.members:
                return
            sub.members.remove(member)
            for record_id, pending in list(sub.pending.items()):
                if pending.owner == member:
                    del sub.pending[record_id]
                    sub.redeliver.append(record_id)
            for key, owner in list(sub.key_owner.items()):
                if owner == member:
                    del sub.key_owner[key]
            self._cond.notify_all()
        logger.debug(f"{member} detached from {subscription_id}")

    def fetch(self, subscription_id: str, member: str, max_records: int, timeout: float) -> List[Delivery]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                sub = self._subscription(subscription_id)
                if member not in sub.members:
                    raise ConsumerStateError(f"{member} is not attached to {subscription_id}")
                if sub.orphaned:
                    raise StreamNotFoundError(
                        f"Stream {sub.stream} of subscription {subscription_id} was deleted"
                    )

                now = time.monotonic()
                self._expire_pending(sub, now)
                deliveries = self._assign(sub, member, max(1, max_records), now)
                if deliveries:
                    return deliveries

                remaining = deadline - now
                if remaining <= 0:
                    return []
                self._cond.wait(min(remaining, FETCH_WAIT_SLICE))

    def ack(self, subscription_id: str, member: str, record_ids: List[RecordId]) -> None:
        """Acknowledge deliveries; acking an already acked record is a no-op"""
        with self._cond:
            sub = self._subscription(subscription_id)
            for record_id in record_ids:
                if record_id in sub.acked:
                    continue
                if record_id not in sub.delivery_counts:
                    raise ConsumerStateError(f"Record {record_id} was never delivered on {subscription_id}")
                sub.pending.pop(record_id, None)
                sub.acked.add(record_id)
            self._cond.notify_all()

    def nack(self, subscription_id: str, member: str, record_ids: List[RecordId]) -> None:
        """Return pending deliveries for redelivery"""
        with self._cond:
            sub = self._subscription(subscription_id)
            for record_id in record_ids:
                if sub.pending.pop(record_id, None) is not None:
                    sub.redeliver.append(record_id)
            self._cond.notify_all()

    def outstanding(self, subscription_id: str) -> Dict[RecordId, str]:
        """Pending deliveries of a subscription mapped to their owning member"""
        with self._cond:
            sub = self._subscription(subscription_id)
            return {record_id: pending.owner for record_id, pending in sub.pending.items()}

    def acked_count(self, subscription_id: str) -> int:
        with self._cond:
            return len(self._subscription(subscription_id).acked)

    def _subscription(self, subscription_id: str) -> _SubscriptionState:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} does not exist")
        return sub

    def _expire_pending(self, sub: _SubscriptionState, now: float) -> None:
        for record_id, pending in list(sub.pending.items()):
            if pending.deadline <= now:
                del sub.pending[record_id]
                sub.redeliver.append(record_id)
                logger.debug(f"Ack timeout for {record_id} held by {pending.owner} on {sub.subscription_id}")

    def _may_deliver(self, sub: _SubscriptionState, member: str, record: Record) -> bool:
        # Records without an ordering key are load balanced freely
        if record.ordering_key is None:
            return True
        owner = sub.key_owner.get(record.ordering_key)
        if owner is None:
            sub.key_owner[record.ordering_key] = member
            return True
        return owner == member

    def _assign(self, sub: _SubscriptionState, member: str, max_records: int, now: float) -> List[Delivery]:
        stream_records = self._streams[sub.stream]
        while sub.cursor < len(stream_records):
            sub.backlog.append(stream_records[sub.cursor][0])
            sub.cursor += 1

        picked: List[Tuple[RecordId, Record]] = []
        for queue in (sub.redeliver, sub.backlog):
            skipped = []
            while queue and len(picked) < max_records:
                record_id = queue.popleft()
                if record_id in sub.acked or record_id in sub.pending:
                    continue
                record = self._records.get(record_id)
                if record is None:
                    continue
                if not self._may_deliver(sub, member, record):
                    skipped.append(record_id)
                    continue
                picked.append((record_id, record))
            queue.extendleft(reversed(skipped))

        deliveries = []
        for record_id, record in picked:
            count = sub.delivery_counts.get(record_id, 0) + 1
            sub.delivery_counts[record_id] = count
            sub.pending[record_id] = _PendingDelivery(owner=member, deadline=now + sub.ack_timeout)
            deliveries.append(Delivery(sub.subscription_id, member, record_id, record, count))
            self.stats['deliveries'] += 1
            if count > 1:
                self.stats['redeliveries'] += 1
        return deliveries


class LoopbackClient(BaseBrokerClient):
    """Broker client bound to one loopback node address"""

    def __init__(self, broker: LoopbackBroker, address: str):
        super().__init__(address)
        self.broker = broker

    def create_stream(self, name: str) -> None:
        self._check_open()
        self.broker.create_stream(name)

    def list_streams(self) -> List[str]:
        self._check_open()
        return self.broker.list_streams()

    def delete_stream(self, name: str) -> None:
        self._check_open()
        self.broker.delete_stream(name)

    def create_subscription(self, subscription_id: str, stream: str, ack_timeout: float = 60.0) -> None:
        self._check_open()
        self.broker.create_subscription(subscription_id, stream, ack_timeout)

    def list_subscriptions(self) -> List[str]:
        self._check_open()
        return self.broker.list_subscriptions()

    def delete_subscription(self, subscription_id: str) -> None:
        self._check_open()
        self.broker.delete_subscription(subscription_id)

    def append(self, stream: str, records: List[Record]) -> List[RecordId]:
        self._check_open()
        return self.broker.append(stream, records)

    def attach(self, subscription_id: str, member: str) -> None:
        self._check_open()
        self.broker.attach(subscription_id, member)

    def detach(self, subscription_id: str, member: str) -> None:
        self._check_open()
        self.broker.detach(subscription_id, member)

    def fetch(self, subscription_id: str, member: str, max_records: int, timeout: float) -> List[Delivery]:
        self._check_open()
        return self.broker.fetch(subscription_id, member, max_records, timeout)

    def ack(self, subscription_id: str, member: str, record_ids: List[RecordId]) -> None:
        self._check_open()
        self.broker.ack(subscription_id, member, record_ids)

    def nack(self, subscription_id: str, member: str, record_ids: List[RecordId]) -> None:
        self._check_open()
        self.broker.nack(subscription_id, member, record_ids)
