"""
RetireFlow - Projection Cache
=============================
Caller-owned cache for projection results.

Entries are keyed by a stable fingerprint of the input model (accounts,
gaps, order and settings) and expire after a fixed TTL. Nothing here is
module-global: whoever needs caching creates and owns an instance.
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def fingerprint(model: BaseModel) -> str:
    """SHA-256 of the model's canonical JSON form."""
    payload = json.dumps(model.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ProjectionCache:
    """
    TTL + size bounded cache.

    Example:
        cache = ProjectionCache(ttl_seconds=300)
        summaries = cache.get_or_compute(request, lambda: project_request(request))
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def get_or_compute(self, key_model: BaseModel, compute: Callable[[], Any]) -> Any:
        key = fingerprint(key_model)
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        logger.info(f"Projection cache miss [{key[:12]}]")
        value = compute()
        self.put(key, value)
        return value

    def invalidate(self, key_model: BaseModel) -> bool:
        return self._entries.pop(fingerprint(key_model), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, float]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }
