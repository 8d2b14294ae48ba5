"""
Operation Log Buffer - Buffers logs per producer thread
"""
import time
import logging
import threading
from typing import List, Tuple

logger = logging.getLogger(__name__)

_flush_lock = threading.Lock()

_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


class OperationLogBuffer:
    """
    Collects the log lines of one worker (typically a producer thread) and
    writes them as one uninterrupted block, so concurrent workers don't
    interleave their output.
    """

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        self.buffer: List[Tuple[str, str]] = []  # (level, message)
        self.started = time.monotonic()

    def info(self, msg: str):
        self.buffer.append(('INFO', msg))

    def debug(self, msg: str):
        self.buffer.append(('DEBUG', msg))

    def warning(self, msg: str):
        self.buffer.append(('WARNING', msg))

    def error(self, msg: str):
        self.buffer.append(('ERROR', msg))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None:
            self.error(f"{type(exc).__name__}: {exc}")
        self.flush()

    def flush(self):
        """Write all buffered lines atomically and clear the buffer"""
        with _flush_lock:
            if not self.buffer:
                return

            elapsed = time.monotonic() - self.started
            logger.info(f"=== {self.operation_id} ({len(self.buffer)} entries, {elapsed:.2f}s) ===")
            for level, msg in self.buffer:
                logger.log(_LEVELS[level], f"[{self.operation_id}] {msg}")
            logger.info(f"=== END {self.operation_id} ===")

            self.buffer.clear()
