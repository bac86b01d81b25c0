"""Track which flows have been seen recently."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

DEFAULT_EXPIRY_TIME = 120

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def get_hash_key(flow_id_fields: str) -> int:
    """Return the 32-bit FNV-1a hash of the flow identifier."""
    value = _FNV32_OFFSET
    for byte in flow_id_fields.encode("utf-8"):
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value


@dataclass
class _CacheInfo:
    flowlogs_count: int = 0
    last_updated: float = 0.0


class ConnectionTracking:
    """A least-recently-updated cache of flow identifiers with expiry."""

    def __init__(self, expiry_time: float = DEFAULT_EXPIRY_TIME) -> None:
        self.expiry_time = expiry_time
        self._cache: OrderedDict[int, _CacheInfo] = OrderedDict()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def is_flow_known(self, flow_id_fields: str) -> bool:
        """Return whether the flow is currently in the cache."""
        key = get_hash_key(flow_id_fields)
        with self._lock:
            return key in self._cache

    def add_flow(self, flow_id_fields: str) -> bool:
        """Record a flow; return True if it was not known before."""
        key = get_hash_key(flow_id_fields)
        with self._lock:
            info = self._cache.get(key)
            is_new = info is None
            if info is None:
                info = _CacheInfo()
                self._cache[key] = info
            else:
                self._cache.move_to_end(key)
            info.flowlogs_count += 1
            info.last_updated = time.monotonic()
        return is_new

    def flowlogs_count(self, flow_id_fields: str) -> int:
        """Return how many times the flow was added since it entered the cache."""
        key = get_hash_key(flow_id_fields)
        with self._lock:
            info = self._cache.get(key)
            return 0 if info is None else info.flowlogs_count

    def cleanup_expired_entries(self) -> None:
        """Drop every flow not updated within the expiry time."""
        expire_time = time.monotonic() - self.expiry_time
        with self._lock:
            while self._cache:
                key, info = next(iter(self._cache.items()))
                if info.last_updated > expire_time:
                    return
                del self._cache[key]

    def _cleanup_loop(self) -> None:
        while not self._stopped.wait(self.expiry_time):
            self.cleanup_expired_entries()

    def start_cleanup_loop(self) -> None:
        """Start a background thread that expires flows periodically."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop, name="conn-tracking-cleanup", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background cleanup thread, if running."""
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None


def init_connection_tracking(expiry_time: float = DEFAULT_EXPIRY_TIME) -> ConnectionTracking:
    """Create a tracker and start its cleanup loop."""
    tracker = ConnectionTracking(expiry_time)
    tracker.start_cleanup_loop()
    return tracker