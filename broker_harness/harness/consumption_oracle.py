"""
Consumption Oracle - runs consumers under programmable ack policies and builds
the observed model

Each consumer reports what it sees on its own channel; a single
ObservationCollector thread merges the channels into the ObservedModel, so no
consumer ever touches shared result state directly.
"""
import time
import queue
import random
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from ..errors import HarnessTimeoutError
from ..interfaces import IBrokerClient, IConsumptionOracle
from ..models import (
    AckPolicyKind, ConsumerGroupConfig, Delivery, ObservedModel, ObservedRecord, payload_key
)
from ..broker_client.base import BrokerError
from ..broker_client.consumer import Consumer, Responder
from .pending_pool import PendingPool

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)

DELIVERED = "delivered"
ACKED = "acked"
NACKED = "nacked"


class LedgerState(Enum):
    PENDING = "pending"
    ACKED = "acked"


@dataclass
class LedgerEntry:
    state: LedgerState
    owner: str
    deliveries: int = 1


class AckLedger:
    """
    Delivery id -> {PENDING, ACKED} plus current owner.
    A redelivery replaces the pending slot; the move to ACKED happens once.
    """

    def __init__(self):
        self.entries: Dict[Any, LedgerEntry] = {}

    def deliver(self, record_id: Any, member: str) -> bool:
        """Record a (re)delivery. Returns False if the record was already acked."""
        entry = self.entries.get(record_id)
        if entry is not None and entry.state == LedgerState.ACKED:
            entry.deliveries += 1
            return False
        deliveries = entry.deliveries + 1 if entry is not None else 1
        self.entries[record_id] = LedgerEntry(LedgerState.PENDING, member, deliveries)
        return True

    def ack(self, record_id: Any, member: str) -> bool:
        """Move a delivery to ACKED. Returns False if it already was."""
        entry = self.entries.get(record_id)
        if entry is None:
            self.entries[record_id] = LedgerEntry(LedgerState.ACKED, member)
            return True
        if entry.state == LedgerState.ACKED:
            return False
        entry.state = LedgerState.ACKED
        return True

    def pending(self) -> Dict[Any, str]:
        return {rid: e.owner for rid, e in self.entries.items() if e.state == LedgerState.PENDING}

    def acked_count(self) -> int:
        return sum(1 for e in self.entries.values() if e.state == LedgerState.ACKED)


class StopCondition(ABC):
    @abstractmethod
    def satisfied(self, model: ObservedModel) -> bool:
        pass


class UntilCount(StopCondition):
    """Stop once at least n distinct records are acked"""

    def __init__(self, n: int):
        self.n = n

    def satisfied(self, model: ObservedModel) -> bool:
        return len(model) >= self.n

    def __repr__(self):
        return f"UntilCount({self.n})"


class UntilPredicate(StopCondition):
    def __init__(self, predicate: Callable[[ObservedModel], bool]):
        self.predicate = predicate

    def satisfied(self, model: ObservedModel) -> bool:
        return bool(self.predicate(model))


class Never(StopCondition):
    """Run until stopped explicitly"""

    def satisfied(self, model: ObservedModel) -> bool:
        return False


class AckPolicy(ABC):
    """Decides how each delivery is answered"""

    @abstractmethod
    def on_delivery(self, delivery: Delivery, responder: Responder) -> None:
        pass

    def tick(self) -> None:
        """Called periodically by the oracle"""
        pass


class AlwaysAck(AckPolicy):
    def on_delivery(self, delivery: Delivery, responder: Responder) -> None:
        responder.ack()


class RandomNack(AckPolicy):
    """
    Withholds the ack for a fraction of deliveries by parking the responder in
    the shared pool (at most max_withheld at a time). Parked responders are
    released once held for hold_seconds, checked on every delivery and tick.
    With explicit_nack the delivery is nacked instead, and only on its first
    delivery, so every record is eventually acked.
    """

    def __init__(self, pool: PendingPool, withhold_fraction: float = 0.5, max_withheld: int = 50,
                 hold_seconds: float = 1.0, explicit_nack: bool = False, rng: Optional[random.Random] = None):
        self.pool = pool
        self.withhold_fraction = withhold_fraction
        self.max_withheld = max_withheld
        self.hold_seconds = hold_seconds
        self.explicit_nack = explicit_nack
        self.rng = rng or random.Random()
        self.withheld = 0
        self.nacked = 0
        self.released = 0
        # on_delivery runs on consumer threads, tick also on the waiting thread
        self._counter_lock = threading.Lock()

    def on_delivery(self, delivery: Delivery, responder: Responder) -> None:
        self.tick()

        if self.explicit_nack:
            if not delivery.is_redelivery and self.rng.random() < self.withhold_fraction:
                if responder.nack():
                    with self._counter_lock:
                        self.nacked += 1
                return
            responder.ack()
            return

        if self.rng.random() < self.withhold_fraction and self.pool.push_if_below(responder, self.max_withheld):
            with self._counter_lock:
                self.withheld += 1
            return
        responder.ack()

    def tick(self) -> None:
        for responder in self.pool.pop_expired(self.hold_seconds):
            if responder.ack():
                with self._counter_lock:
                    self.released += 1


class ShuffleRedeliver(AckPolicy):
    """Acks its own delivery, then sometimes acks a random withheld one out of order"""

    def __init__(self, pool: PendingPool, probability: float = 0.5, rng: Optional[random.Random] = None):
        self.pool = pool
        self.probability = probability
        self.rng = rng or random.Random()
        self.shuffled = 0

    def on_delivery(self, delivery: Delivery, responder: Responder) -> None:
        responder.ack()
        if self.rng.random() < self.probability:
            other = self.pool.pop_random(self.rng)
            if other is not None and other.ack():
                self.shuffled += 1


def build_policy(kind: AckPolicyKind, pool: PendingPool, config: Optional[ConsumerGroupConfig] = None,
                 rng: Optional[random.Random] = None) -> AckPolicy:
    """Ack policy for a member from a consumer group configuration"""
    config = config or ConsumerGroupConfig()
    if kind == AckPolicyKind.ALWAYS:
        return AlwaysAck()
    if kind == AckPolicyKind.RANDOM_NACK:
        return RandomNack(pool, config.withhold_fraction, config.max_withheld, config.hold_seconds,
                          config.explicit_nack, rng)
    if kind == AckPolicyKind.SHUFFLE:
        return ShuffleRedeliver(pool, config.shuffle_probability, rng)
    raise ValueError(f"Unknown ack policy: {kind}")


class Channel:
    """One consumer's outbound event queue"""

    def __init__(self, member: str, signal: threading.Event):
        self.member = member
        self.events: "queue.Queue[Tuple[str, Delivery]]" = queue.Queue()
        self._signal = signal

    def put(self, kind: str, delivery: Delivery) -> None:
        self.events.put((kind, delivery))
        self._signal.set()


class ObservationCollector:
    """Merges per-consumer channels into the observed model and trips the latch"""

    def __init__(self, subscription_id: str, stop_condition: StopCondition, merge_interval: float = 0.05):
        self.model = ObservedModel(subscription_id=subscription_id)
        self.ledger = AckLedger()
        self.stop_condition = stop_condition
        self.merge_interval = merge_interval
        self.latch = threading.Event()

        self._channels: Dict[str, Channel] = {}
        self._first_delivered = set()
        self._redelivered = set()
        self._member_acked = set()
        self._signal = threading.Event()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def channel(self, member: str) -> Channel:
        with self._lock:
            if member not in self._channels:
                self._channels[member] = Channel(member, self._signal)
            return self._channels[member]

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"collector-{self.model.subscription_id}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> ObservedModel:
        """Stop merging and absorb whatever is still queued"""
        self._stop_event.set()
        self._signal.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                raise HarnessTimeoutError(f"Observation collector did not stop within {timeout:.2f}s")
        self._merge()
        with self._lock:
            self.model.completed = self.stop_condition.satisfied(self.model)
        return self.model

    def snapshot(self) -> ObservedModel:
        """Copy of the model as merged so far"""
        with self._lock:
            m = self.model
            return ObservedModel(
                subscription_id=m.subscription_id,
                acked=dict(m.acked),
                sequence=list(m.sequence),
                per_member={k: list(v) for k, v in m.per_member.items()},
                delivery_order={k: list(v) for k, v in m.delivery_order.items()},
                deliveries=m.deliveries,
                redeliveries=m.redeliveries,
                duplicate_acks=m.duplicate_acks,
                completed=m.completed
            )

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._signal.wait(self.merge_interval)
            self._signal.clear()
            self._merge()

    def _merge(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            for channel in channels:
                while True:
                    try:
                        kind, delivery = channel.events.get_nowait()
                    except queue.Empty:
                        break
                    self._apply(channel.member, kind, delivery)

            if not self.latch.is_set() and self.stop_condition.satisfied(self.model):
                self.latch.set()

    def _apply(self, member: str, kind: str, delivery: Delivery) -> None:
        model = self.model
        observed = ObservedRecord(
            record_id=delivery.record_id,
            payload_key=payload_key(delivery.record.payload),
            ordering_key=delivery.record.key,
            member=delivery.member
        )

        if kind == DELIVERED:
            model.deliveries += 1
            if delivery.is_redelivery:
                model.redeliveries += 1
                self._redelivered.add(delivery.record_id)
            self.ledger.deliver(delivery.record_id, delivery.member)
            if delivery.record_id not in self._first_delivered:
                self._first_delivered.add(delivery.record_id)
                model.delivery_order.setdefault(delivery.member, []).append(observed)
        elif kind == ACKED:
            member_ack = (delivery.member, delivery.record_id)
            first_for_member = member_ack not in self._member_acked
            self._member_acked.add(member_ack)
            if self.ledger.ack(delivery.record_id, delivery.member):
                model.acked[delivery.record_id] = observed
                model.sequence.append(observed)
                model.per_member.setdefault(delivery.member, []).append(observed)
            else:
                model.duplicate_acks += 1
                # Another member's ack of a record the broker never redelivered:
                # the record was handed to two members at once
                if first_for_member and delivery.record_id not in self._redelivered:
                    model.per_member.setdefault(delivery.member, []).append(observed)
        elif kind == NACKED:
            logger.debug(f"{member} nacked {delivery.record_id}")


class ConsumerHandle:
    """Cancellable set of running consumers sharing one collector and pending pool"""

    def __init__(self, subscription_id: str, consumers: List[Consumer], collector: ObservationCollector,
                 policies: List[AckPolicy], pool: PendingPool, tick_interval: float = 0.05):
        self.subscription_id = subscription_id
        self.consumers = consumers
        self.collector = collector
        self.policies = policies
        self.pool = pool
        self.tick_interval = tick_interval
        self.stopped = False
        self.model: Optional[ObservedModel] = None
        self.drain_errors: List[BrokerError] = []

    @property
    def failures(self) -> Dict[str, BaseException]:
        return {c.name: c.failure for c in self.consumers if c.failure is not None}

    def observed(self) -> ObservedModel:
        return self.model if self.model is not None else self.collector.snapshot()

    def wait(self, timeout: float) -> bool:
        """
        Block until the stop condition holds, a consumer fails, or timeout.
        Ticks the ack policies while waiting. Returns True if the condition holds.
        """
        deadline = time.monotonic() + timeout
        while not self.collector.latch.wait(self.tick_interval):
            for policy in self.policies:
                policy.tick()
            if self.failures:
                return False
            if time.monotonic() >= deadline:
                return False
        return True

    def drain_pending(self) -> int:
        """Ack every withheld responder; acks the broker rejects land in drain_errors"""
        released = 0
        for responder in self.pool.drain():
            try:
                if responder.ack():
                    released += 1
            except BrokerError as e:
                logger.warning(f"Could not release withheld ack {responder.delivery.record_id} "
                               f"on {self.subscription_id}: {e}")
                self.drain_errors.append(e)
        if released:
            logger.info(f"Released {released} withheld acks on {self.subscription_id}")
        return released

    def stop(self, timeout: float = 10.0) -> ObservedModel:
        """
        Drain the pending pool, stop every consumer and wait for each worker
        thread to end, then return the final observed model.
        """
        if self.stopped:
            return self.model

        not_stopped: List[str] = []
        try:
            self.drain_pending()
        finally:
            try:
                not_stopped = [c.name for c in self.consumers if not c.stop(timeout)]
                # Responders parked after the first drain are still owed an ack
                self.drain_pending()
            finally:
                self.model = self.collector.stop(timeout)
                self.stopped = True

        if not_stopped:
            raise HarnessTimeoutError(
                f"Consumers {', '.join(not_stopped)} did not stop within {timeout:.2f}s",
                details={'subscription_id': self.subscription_id, 'members': not_stopped}
            )
        return self.model


class ConsumptionOracle(IConsumptionOracle):
    """Runs consumers against subscriptions and reconciles what they acknowledged"""

    def __init__(self, client: IBrokerClient, fetch_size: int = 100, poll_timeout: float = 0.1,
                 tick_interval: float = 0.05, seed: Optional[int] = None):
        self.client = client
        self.fetch_size = fetch_size
        self.poll_timeout = poll_timeout
        self.tick_interval = tick_interval
        self.rng = random.Random(seed)

    def consume(self, subscription_id: str, member: str, ack_policy: Optional[AckPolicy] = None,
                stop_condition: Optional[StopCondition] = None, timeout: float = 20.0,
                allow_timeout: bool = False) -> ObservedModel:
        """Consume synchronously until the stop condition holds or timeout expires"""
        handle = self.consume_async(subscription_id, member, ack_policy, stop_condition)
        return self.collect(handle, timeout, allow_timeout)

    def consume_async(self, subscription_id: str, member: str, ack_policy: Optional[AckPolicy] = None,
                      stop_condition: Optional[StopCondition] = None, pool: Optional[PendingPool] = None,
                      client: Optional[IBrokerClient] = None) -> ConsumerHandle:
        """Start one consumer and return a cancellable handle"""
        policy = ack_policy or AlwaysAck()
        if pool is None:
            pool = getattr(policy, "pool", None)
        if pool is None:
            pool = PendingPool()
        clients = {member: client} if client is not None else None
        return self._start(subscription_id, [member], {member: policy}, stop_condition or Never(), pool, clients)

    def start_group(self, subscription_id: str, members: List[str],
                    policy_factory: Optional[Callable[[str, PendingPool], AckPolicy]] = None,
                    stop_condition: Optional[StopCondition] = None,
                    clients: Optional[Dict[str, IBrokerClient]] = None) -> ConsumerHandle:
        """Start one consumer per member of a group sharing one pending pool"""
        pool = PendingPool()
        policies = {}
        for member in members:
            policies[member] = policy_factory(member, pool) if policy_factory else AlwaysAck()
        return self._start(subscription_id, members, policies, stop_condition or Never(), pool, clients)

    def consume_group(self, subscription_id: str, members: List[str],
                      policy_factory: Optional[Callable[[str, PendingPool], AckPolicy]] = None,
                      expected_count: Optional[int] = None, timeout: float = 20.0,
                      stop_condition: Optional[StopCondition] = None,
                      clients: Optional[Dict[str, IBrokerClient]] = None,
                      allow_timeout: bool = False) -> ObservedModel:
        """Run a consumer group until expected_count distinct records are acked"""
        if stop_condition is None:
            stop_condition = UntilCount(expected_count) if expected_count is not None else Never()
        handle = self.start_group(subscription_id, members, policy_factory, stop_condition, clients)
        return self.collect(handle, timeout, allow_timeout)

    def group_policy_factory(self, config: ConsumerGroupConfig) -> Callable[[str, PendingPool], AckPolicy]:
        """Policy factory following a consumer group configuration, seeded from the oracle"""
        def factory(member: str, pool: PendingPool) -> AckPolicy:
            rng = random.Random(self.rng.random())
            return build_policy(config.policy_for(member), pool, config, rng)
        return factory

    def _start(self, subscription_id: str, members: List[str], policies: Dict[str, AckPolicy],
               stop_condition: StopCondition, pool: PendingPool,
               clients: Optional[Dict[str, IBrokerClient]]) -> ConsumerHandle:
        collector = ObservationCollector(subscription_id, stop_condition)
        collector.start()
        consumers: List[Consumer] = []

        try:
            for member in members:
                channel = collector.channel(member)
                policy = policies[member]
                client = (clients or {}).get(member, self.client)

                def receiver(delivery: Delivery, responder: Responder, channel=channel, policy=policy):
                    channel.put(DELIVERED, delivery)
                    policy.on_delivery(delivery, responder)

                consumer = Consumer(
                    client, subscription_id, member, receiver,
                    fetch_size=self.fetch_size,
                    poll_timeout=self.poll_timeout,
                    on_ack=lambda delivery, channel=channel: channel.put(ACKED, delivery),
                    on_nack=lambda delivery, channel=channel: channel.put(NACKED, delivery)
                )
                consumer.start()
                consumers.append(consumer)
        except Exception:
            for consumer in consumers:
                consumer.stop()
            collector.stop()
            raise

        logger.info(f"Started {len(consumers)} consumer(s) on {subscription_id}: {', '.join(members)}")
        return ConsumerHandle(subscription_id, consumers, collector, list(policies.values()), pool,
                              self.tick_interval)

    def collect(self, handle: ConsumerHandle, timeout: float, allow_timeout: bool = False) -> ObservedModel:
        """Wait for a handle's stop condition, stop it, and return the final model"""
        try:
            handle.wait(timeout)
        finally:
            model = handle.stop()

        failures = handle.failures
        if failures:
            member, failure = next(iter(failures.items()))
            logger.error(f"Consumer {member} on {handle.subscription_id} failed: {failure}")
            raise failure

        if not model.completed and not allow_timeout:
            raise HarnessTimeoutError(
                f"Stop condition {handle.collector.stop_condition!r} not met on {handle.subscription_id} "
                f"within {timeout:.2f}s: {len(model)} records acked",
                details={'subscription_id': handle.subscription_id, 'acked': len(model),
                         'deliveries': model.deliveries}
            )

        logger.info(f"Observed {len(model)} acked records on {handle.subscription_id} "
                    f"({model.deliveries} deliveries, {model.redeliveries} redeliveries)")
        return model
