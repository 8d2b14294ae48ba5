"""
Producers - direct and buffered writers built on the broker client's append
"""
import time
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import List, Optional
from ..interfaces import IBrokerClient
from ..models import Record, BatchSetting
from .base import ProducerClosedError, RecordTooLargeError

logger = logging.getLogger(__name__)


class Producer:
    """Unbatched writer: one append per record, the future resolves before write returns"""

    def __init__(self, client: IBrokerClient, stream: str):
        self.client = client
        self.stream = stream
        self.closed = False
        self.flush_count = 0

    def write(self, record: Record) -> Future:
        if self.closed:
            raise ProducerClosedError(f"Producer for {self.stream} is closed")

        future: Future = Future()
        try:
            record_ids = self.client.append(self.stream, [record])
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(record_ids[0])
        self.flush_count += 1
        return future

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@dataclass
class _BufferedWrite:
    record: Record
    future: Future
    size: int


class BufferedProducer:
    """
    Batching writer.

    Buffers records and sends them as one append when ANY enabled limit trips:
    record count, cumulative bytes, or age of the oldest buffered record.
    Writes that arrive after a flush stay buffered, with unresolved futures,
    until the next flush or close.
    """

    def __init__(self, client: IBrokerClient, stream: str, batch: Optional[BatchSetting] = None):
        self.client = client
        self.stream = stream
        self.batch = batch or BatchSetting()
        self.flush_count = 0
        self.closed = False

        self._lock = threading.Lock()
        # Serializes take-and-send so batches reach the broker in the order they were cut
        self._send_lock = threading.Lock()
        self._buffer: List[_BufferedWrite] = []
        self._buffered_bytes = 0
        self._oldest: Optional[float] = None

        self._stop_event = threading.Event()
        self._age_thread: Optional[threading.Thread] = None
        if self.batch.age_enabled:
            self._age_thread = threading.Thread(
                target=self._age_loop, name=f"age-flush-{stream}", daemon=True
            )
            self._age_thread.start()

    def write(self, record: Record) -> Future:
        future: Future = Future()
        with self._lock:
            if self.closed:
                raise ProducerClosedError(f"Producer for {self.stream} is closed")
            size = record.size
            self._buffer.append(_BufferedWrite(record, future, size))
            self._buffered_bytes += size
            if self._oldest is None:
                self._oldest = time.monotonic()
            should_flush = self._limit_reached()

        if should_flush:
            self._flush_buffer()
        return future

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> None:
        """Send everything buffered so far"""
        self._flush_buffer()

    def close(self) -> None:
        """Flush outstanding records; every issued future is resolved on return"""
        with self._lock:
            if self.closed:
                return
            self.closed = True

        self._stop_event.set()
        if self._age_thread is not None:
            self._age_thread.join()
        self._flush_buffer()
        logger.debug(f"Producer for {self.stream} closed after {self.flush_count} flushes")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _limit_reached(self) -> bool:
        if self.batch.count_enabled and len(self._buffer) >= self.batch.record_count_limit:
            return True
        if self.batch.bytes_enabled and self._buffered_bytes >= self.batch.bytes_limit:
            return True
        return False

    def _age_expired(self) -> bool:
        with self._lock:
            if self._oldest is None:
                return False
            return (time.monotonic() - self._oldest) * 1000 >= self.batch.age_limit_ms

    def _age_loop(self) -> None:
        interval = max(self.batch.age_limit_ms / 4000.0, 0.001)
        while not self._stop_event.wait(interval):
            if self._age_expired():
                self._flush_buffer()

    def _flush_buffer(self) -> None:
        with self._send_lock:
            with self._lock:
                pending = self._buffer
                self._buffer = []
                self._buffered_bytes = 0
                self._oldest = None
            if pending:
                self._send(pending)

    def _send(self, pending: List[_BufferedWrite]) -> None:
        self.flush_count += 1
        try:
            record_ids = self.client.append(self.stream, [p.record for p in pending])
        except RecordTooLargeError as e:
            if len(pending) == 1:
                pending[0].future.set_exception(e)
                return
            # Resend one at a time so only the oversized records fail
            for write in pending:
                self._send_single(write)
            return
        except Exception as e:
            logger.debug(f"Flush of {len(pending)} records to {self.stream} failed: {e}")
            for write in pending:
                write.future.set_exception(e)
            return

        for write, record_id in zip(pending, record_ids):
            write.future.set_result(record_id)

    def _send_single(self, write: _BufferedWrite) -> None:
        try:
            record_ids = self.client.append(self.stream, [write.record])
        except Exception as e:
            write.future.set_exception(e)
        else:
            write.future.set_result(record_ids[0])
