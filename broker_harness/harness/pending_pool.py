"""
Pending Pool - shared holding area for withheld acknowledgments
"""
import time
import random
import threading
from collections import deque
from typing import Deque, List, Optional, Tuple
from ..broker_client.consumer import Responder


class PendingPool:
    """
    Mutex-protected pool of responders whose ack is being withheld.

    Any consumer may push or pop; popping a responder transfers the duty to
    answer it. Entries carry their push time so holders can release stale ones.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Deque[Tuple[float, Responder]] = deque()

    def push(self, responder: Responder) -> None:
        with self._lock:
            self._entries.append((time.monotonic(), responder))

    def push_if_below(self, responder: Responder, limit: int) -> bool:
        """Push only while fewer than limit responders are held"""
        with self._lock:
            if len(self._entries) >= limit:
                return False
            self._entries.append((time.monotonic(), responder))
            return True

    def pop(self) -> Optional[Responder]:
        """Most recently withheld responder, or None"""
        with self._lock:
            if not self._entries:
                return None
            return self._entries.pop()[1]

    def pop_random(self, rng: Optional[random.Random] = None) -> Optional[Responder]:
        rng = rng or random
        with self._lock:
            if not self._entries:
                return None
            index = rng.randrange(len(self._entries))
            self._entries.rotate(-index)
            entry = self._entries.popleft()
            self._entries.rotate(index)
            return entry[1]

    def pop_expired(self, max_age: float) -> List[Responder]:
        """Remove and return every responder held for at least max_age seconds"""
        cutoff = time.monotonic() - max_age
        with self._lock:
            expired = [responder for pushed, responder in self._entries if pushed <= cutoff]
            if expired:
                self._entries = deque(entry for entry in self._entries if entry[0] > cutoff)
            return expired

    def drain(self) -> List[Responder]:
        with self._lock:
            responders = [responder for _, responder in self._entries]
            self._entries.clear()
            return responders

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
