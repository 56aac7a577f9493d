"""In-memory cache of branch connection descriptors."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable, Optional

from headoffice.tenancy.connection_strings import ConnectionDescriptor, build_descriptor

logger = logging.getLogger("headoffice.tenancy.cache")


class BranchContextCache:
    """Memoizes one ``ConnectionDescriptor`` per branch id.

    There is no TTL. Any change to a branch's connection fields must be
    followed by ``invalidate(branch.id)``, otherwise later handles keep
    pointing at the old database or credentials.
    """

    def __init__(self, builder: Callable[[Any], ConnectionDescriptor] = build_descriptor) -> None:
        self._builder = builder
        self._lock = Lock()
        self._entries: dict[str, ConnectionDescriptor] = {}
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def get_or_build(self, branch: Any) -> ConnectionDescriptor:
        key = str(branch.id)
        with self._lock:
            descriptor = self._entries.get(key)
            if descriptor is not None:
                self._hits += 1
                return descriptor

            self._misses += 1
            # A failing build leaves no entry behind.
            descriptor = self._builder(branch)
            self._entries[key] = descriptor

        logger.info(
            "Cached connection descriptor for branch %s",
            getattr(branch, "code", key),
            extra={"branch_id": key, "provider": descriptor.provider.value},
        )
        return descriptor

    def invalidate(self, branch_id: Optional[str] = None) -> bool:
        """Drop one branch's entry, or every entry when ``branch_id`` is None."""
        with self._lock:
            if branch_id is None:
                removed = bool(self._entries)
                self._entries.clear()
            else:
                removed = self._entries.pop(str(branch_id), None) is not None
            if removed:
                self._invalidations += 1

        if removed:
            logger.info(
                "Invalidated connection cache for %s",
                f"branch {branch_id}" if branch_id is not None else "all branches",
                extra={"branch_id": branch_id},
            )
        return removed

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "invalidations": self._invalidations,
            }

    def __contains__(self, branch_id: object) -> bool:
        with self._lock:
            return str(branch_id) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
