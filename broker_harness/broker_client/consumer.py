"""
Consumer - callback-driven receiver for one consumer-group member
"""
import logging
import threading
from typing import Callable, Optional
from ..interfaces import IBrokerClient
from ..models import Delivery
from .base import BrokerError, ConsumerStateError

logger = logging.getLogger(__name__)


class Responder:
    """Ack/nack handle for a single delivery; the first response wins"""

    def __init__(
        self,
        client: IBrokerClient,
        delivery: Delivery,
        on_ack: Optional[Callable[[Delivery], None]] = None,
        on_nack: Optional[Callable[[Delivery], None]] = None
    ):
        self.client = client
        self.delivery = delivery
        self._on_ack = on_ack
        self._on_nack = on_nack
        self._lock = threading.Lock()
        self.resolved = False

    def ack(self) -> bool:
        """Acknowledge the delivery. Returns False if it was already answered."""
        with self._lock:
            if self.resolved:
                return False
            self.client.ack(self.delivery.subscription_id, self.delivery.member, [self.delivery.record_id])
            self.resolved = True
        if self._on_ack:
            self._on_ack(self.delivery)
        return True

    def nack(self) -> bool:
        """Ask the broker to redeliver. Returns False if it was already answered."""
        with self._lock:
            if self.resolved:
                return False
            self.client.nack(self.delivery.subscription_id, self.delivery.member, [self.delivery.record_id])
            self.resolved = True
        if self._on_nack:
            self._on_nack(self.delivery)
        return True


class Consumer:
    """
    Runs a fetch loop on a worker thread and hands each delivery to a receiver
    callback together with its Responder.

    start() attaches synchronously, so joining a missing or deleted
    subscription fails in the caller. Failures inside the loop stop the
    consumer and are kept in `failure`.
    """

    def __init__(
        self,
        client: IBrokerClient,
        subscription_id: str,
        name: str,
        receiver: Callable[[Delivery, Responder], None],
        fetch_size: int = 100,
        poll_timeout: float = 0.1,
        on_ack: Optional[Callable[[Delivery], None]] = None,
        on_nack: Optional[Callable[[Delivery], None]] = None
    ):
        self.client = client
        self.subscription_id = subscription_id
        self.name = name
        self.receiver = receiver
        self.fetch_size = fetch_size
        self.poll_timeout = poll_timeout
        self.on_ack = on_ack
        self.on_nack = on_nack

        self.failure: Optional[BaseException] = None
        self.received = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.stopped = False

    def start(self) -> "Consumer":
        if self._thread is not None:
            raise ConsumerStateError(f"Consumer {self.name} already started")

        self.client.attach(self.subscription_id, self.name)
        self._thread = threading.Thread(
            target=self._run, name=f"consumer-{self.subscription_id}-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(f"Consumer {self.name} started on {self.subscription_id}")
        return self

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 10.0) -> bool:
        """
        Stop fetching, wait for the worker thread and leave the group.
        Returns False if the thread did not terminate within timeout.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Consumer {self.name} did not stop within {timeout:.2f}s")
                return False

        if not self.stopped:
            try:
                self.client.detach(self.subscription_id, self.name)
            except BrokerError as e:
                logger.warning(f"Detaching {self.name} from {self.subscription_id} failed: {e}")
            self.stopped = True
            logger.info(f"Consumer {self.name} stopped after {self.received} deliveries")
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                deliveries = self.client.fetch(
                    self.subscription_id, self.name, self.fetch_size, self.poll_timeout
                )
                for delivery in deliveries:
                    self.received += 1
                    responder = Responder(self.client, delivery, self.on_ack, self.on_nack)
                    self.receiver(delivery, responder)
            except Exception as e:
                self.failure = e
                logger.error(f"Consumer {self.name} on {self.subscription_id} failed: {e}")
                return
