"""
Workload Generator - produces records through a chosen discipline and records
exactly what the broker acknowledged
"""
import random
import string
import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError, as_completed
from typing import List, Optional, Tuple
from ..errors import HarnessTimeoutError
from ..interfaces import IBrokerClient, IWorkloadGenerator
from ..models import (
    Record, PayloadShape, PayloadKind, WorkloadConfig, Discipline, ExpectedModel,
    ProducedRecord, payload_key
)
from ..broker_client.producer import Producer, BufferedProducer
from .operation_log_buffer import OperationLogBuffer

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)

_VALUE_ALPHABET = string.ascii_letters + string.digits
DEFAULT_BURST = 10

# (index, record, future) for a write that has been issued
IssuedWrite = Tuple[int, Record, Future]


def generate_records(count: int, shape: PayloadShape, rng: random.Random) -> List[Record]:
    """Build `count` records of the given shape, assigning ordering keys round-robin"""
    keys = shape.ordering_keys or []
    records = []
    for index in range(count):
        key = keys[index % len(keys)] if keys else None
        kind = shape.kind
        if kind == PayloadKind.MIXED:
            kind = PayloadKind.RAW if rng.random() < 0.5 else PayloadKind.JSON

        if kind == PayloadKind.TINY:
            payload = bytes([index % 256])
        elif kind == PayloadKind.JSON:
            payload = {
                'index': index,
                'key': key,
                'value': ''.join(rng.choices(_VALUE_ALPHABET, k=max(shape.size, 1)))
            }
        else:
            payload = _raw_payload(index, shape.size, rng)

        records.append(Record(payload=payload, ordering_key=key))
    return records


def _raw_payload(index: int, size: int, rng: random.Random) -> bytes:
    # Index prefix keeps payloads distinct so diffs point at specific records
    if size >= 8:
        return index.to_bytes(8, 'big') + _random_bytes(size - 8, rng)
    return _random_bytes(size, rng)


def _random_bytes(size: int, rng: random.Random) -> bytes:
    if size <= 0:
        return b""
    return rng.getrandbits(size * 8).to_bytes(size, 'little')


class WorkloadGenerator(IWorkloadGenerator):
    """Issues records against a stream and returns the frozen expected model"""

    def __init__(self, client: IBrokerClient, seed: Optional[int] = None):
        self.client = client
        self.seed = seed
        self.rng = random.Random(seed)

    def produce(self, stream: str, config: WorkloadConfig) -> ExpectedModel:
        rng = random.Random(config.seed) if config.seed is not None else self.rng
        records = generate_records(config.count, config.payload, rng)

        logger.info(f"Producing {len(records)} {config.payload.kind.value} records to {stream} "
                    f"with discipline {config.discipline.value}")

        if config.discipline == Discipline.DIRECT:
            expected = self._produce_direct(stream, records, config)
        elif config.discipline == Discipline.BATCHED:
            expected = self._produce_batched(stream, records, config)
        elif config.discipline == Discipline.CONCURRENT:
            expected = self._produce_concurrent(stream, records, config)
        elif config.discipline == Discipline.MIXED:
            expected = self.produce_mixed(stream, config, records=records)
        else:
            raise ValueError(f"Unknown discipline: {config.discipline}")

        logger.info(f"Produced {len(expected)} records to {stream}")
        return expected.freeze()

    def produce_mixed(self, stream: str, config: WorkloadConfig,
                      records: Optional[List[Record]] = None) -> ExpectedModel:
        """
        Interleave single direct writes with batched bursts on one stream.
        The expected model keeps the order in which writes were acknowledged.
        """
        if records is None:
            rng = random.Random(config.seed) if config.seed is not None else self.rng
            records = generate_records(config.count, config.payload, rng)

        expected = ExpectedModel(stream=stream)
        burst = config.batch.record_count_limit if config.batch.count_enabled else DEFAULT_BURST
        log = OperationLogBuffer(f"producer-mixed-{stream}")

        direct = Producer(self.client, stream)
        batched = BufferedProducer(self.client, stream, config.batch)
        try:
            index = 0
            use_direct = True
            while index < len(records):
                if use_direct:
                    future = direct.write(records[index])
                    self._record(expected, index, records[index], future, config.write_timeout)
                    index += 1
                else:
                    chunk = records[index:index + burst]
                    issued = [(index + offset, record, batched.write(record)) for offset, record in enumerate(chunk)]
                    batched.flush()
                    for write_index, record, future in issued:
                        self._record(expected, write_index, record, future, config.write_timeout)
                    log.info(f"Burst of {len(chunk)} records at {index}")
                    index += len(chunk)
                use_direct = not use_direct
        finally:
            batched.close()
            direct.close()
            log.info(f"{len(expected)} writes acknowledged, {batched.flush_count} batched flushes")
            log.flush()

        return expected

    def _produce_direct(self, stream: str, records: List[Record], config: WorkloadConfig) -> ExpectedModel:
        expected = ExpectedModel(stream=stream)
        with OperationLogBuffer(f"producer-direct-{stream}") as log, Producer(self.client, stream) as producer:
            for index, record in enumerate(records):
                future = producer.write(record)
                self._record(expected, index, record, future, config.write_timeout)
            log.info(f"{len(expected)} direct writes acknowledged")
        return expected

    def _produce_batched(self, stream: str, records: List[Record], config: WorkloadConfig) -> ExpectedModel:
        expected = ExpectedModel(stream=stream)
        with OperationLogBuffer(f"producer-batched-{stream}") as log:
            producer = BufferedProducer(self.client, stream, config.batch)
            try:
                issued = [(index, record, producer.write(record)) for index, record in enumerate(records)]
            finally:
                producer.close()

            for index, record, future in issued:
                self._record(expected, index, record, future, config.write_timeout)
            log.info(f"{len(expected)} batched writes acknowledged in {producer.flush_count} flushes")
        return expected

    def _produce_concurrent(self, stream: str, records: List[Record], config: WorkloadConfig) -> ExpectedModel:
        """Several threads write interleaved slices through one shared buffered producer"""
        threads = max(1, config.producers)
        producer = BufferedProducer(self.client, stream, config.batch)
        issued: List[IssuedWrite] = []
        indexed = list(enumerate(records))

        try:
            with ThreadPoolExecutor(max_workers=threads) as executor:
                futures = [
                    executor.submit(self._write_slice, producer, thread_id, indexed[thread_id::threads])
                    for thread_id in range(threads)
                ]
                for future in as_completed(futures):
                    issued.extend(future.result())
        finally:
            producer.close()

        produced = [self._resolve(index, record, future, config.write_timeout) for index, record, future in issued]
        # Acknowledgment order across threads is the broker's id order
        produced.sort(key=lambda p: p.record_id)

        expected = ExpectedModel(stream=stream)
        for p in produced:
            expected.add(p)
        logger.info(f"{threads} producer threads wrote {len(expected)} records in {producer.flush_count} flushes")
        return expected

    def _write_slice(self, producer: BufferedProducer, thread_id: int,
                     indexed: List[Tuple[int, Record]]) -> List[IssuedWrite]:
        log = OperationLogBuffer(f"producer-{thread_id}")
        issued = []
        try:
            for index, record in indexed:
                issued.append((index, record, producer.write(record)))
            log.info(f"Issued {len(issued)} writes")
        finally:
            log.flush()
        return issued

    def _resolve(self, index: int, record: Record, future: Future, timeout: float) -> ProducedRecord:
        try:
            record_id = future.result(timeout=timeout)
        except FutureTimeoutError:
            raise HarnessTimeoutError(
                f"Write {index} was not acknowledged within {timeout:.2f}s",
                details={'index': index}
            )
        return ProducedRecord(
            index=index,
            payload_key=payload_key(record.payload),
            ordering_key=record.key,
            record_id=record_id
        )

    def _record(self, expected: ExpectedModel, index: int, record: Record, future: Future, timeout: float) -> None:
        expected.add(self._resolve(index, record, future, timeout))
