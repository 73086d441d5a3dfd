# integrity.py
# SHA-256 fingerprints for order arguments.
#
# Two order calls with the same trade id and the same economic content hash
# to the same value regardless of key order. The session keeps the set of
# fingerprints it has seen and treats a repeat as duplicate execution.

import hashlib
import json
import threading
from typing import Any

# Keys that carry no economic meaning and must not affect the fingerprint.
_VOLATILE_KEYS = frozenset({"correlation_id", "tag", "timestamp", "request_id"})


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(payload: dict[str, Any]) -> str:
    """Deterministic serialization. sort_keys is required."""
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)


def fingerprint(trade_id: str, tool_name: str, args: dict[str, Any]) -> str:
    body = {key: value for key, value in args.items() if key not in _VOLATILE_KEYS}
    return _sha256(_serialize({"trade_id": trade_id, "tool": tool_name, "args": body}))


class FingerprintLog:
    """Thread-safe set of order fingerprints seen in one session."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def record(self, value: str) -> bool:
        """Add ``value``. Returns False when it was already present."""
        with self._lock:
            if value in self._seen:
                return False
            self._seen.add(value)
            return True

    def __contains__(self, value: str) -> bool:
        with self._lock:
            return value in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
