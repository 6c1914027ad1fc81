from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field


logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AwarenessSnapshot(BaseModel):
    """Last fetched view of the external domain"""
    model_config = ConfigDict(frozen=True)

    summary: str
    skeleton: Optional[List[Any]] = None
    relevant: Optional[List[Any]] = None
    tokens_used: int = 0
    fetched_at: datetime = Field(default_factory=utcnow)

    def known_ids(self) -> Optional[Set[str]]:
        """IDs named by the skeleton and relevant items, None when neither was fetched"""

        if self.skeleton is None and self.relevant is None:
            return None

        ids = set()
        for item in (self.skeleton or []) + (self.relevant or []):
            if isinstance(item, str):
                ids.add(item)
            elif isinstance(item, dict) and isinstance(item.get("id"), str):
                ids.add(item["id"])
        return ids


class DomainChange(BaseModel):
    """Difference between a saved snapshot and a fresh one"""
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    summary_changed: bool = False

    @property
    def has_changed(self) -> bool:
        return bool(self.added or self.removed or self.summary_changed)


def detect_domain_change(saved: Optional[AwarenessSnapshot], current: AwarenessSnapshot) -> DomainChange:
    if saved is None:
        return DomainChange()

    before = saved.known_ids() or set()
    after = current.known_ids() or set()
    return DomainChange(
        added=sorted(after - before),
        removed=sorted(before - after),
        summary_changed=saved.summary != current.summary,
    )


class AwarenessCache:
    """Single-slot cache of domain awareness with a staleness flag.

    A snapshot is replaced wholesale on refresh. ``invalidate`` marks it
    stale and bumps the domain version; iterations that did not mutate the
    domain bump the version without invalidating.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock
        self._snapshot: Optional[AwarenessSnapshot] = None
        self._stale = False
        self._version = 0

    @property
    def snapshot(self) -> Optional[AwarenessSnapshot]:
        return self._snapshot

    @property
    def fetched_at(self) -> Optional[datetime]:
        return self._snapshot.fetched_at if self._snapshot else None

    @property
    def is_stale(self) -> bool:
        return self._stale

    @property
    def version(self) -> int:
        return self._version

    def is_expired(self) -> bool:
        if self.ttl is None or self._snapshot is None:
            return False
        return self._clock() - self._snapshot.fetched_at >= self.ttl

    def needs_refresh(self) -> bool:
        """True when there is no snapshot, it was invalidated, or its TTL elapsed"""
        return self._snapshot is None or self._stale or self.is_expired()

    def update(self, snapshot: AwarenessSnapshot):
        """Replace the snapshot and clear the stale flag"""
        self._snapshot = snapshot
        self._stale = False

    def capture(
        self,
        summary: str,
        skeleton: Optional[List[Any]] = None,
        relevant: Optional[List[Any]] = None,
        tokens_used: int = 0,
    ) -> AwarenessSnapshot:
        """Build a snapshot stamped by this cache's clock and store it"""
        snapshot = AwarenessSnapshot(
            summary=summary,
            skeleton=skeleton,
            relevant=relevant,
            tokens_used=tokens_used,
            fetched_at=self._clock(),
        )
        self.update(snapshot)
        return snapshot

    def invalidate(self):
        """Mark the snapshot stale after a mutating call"""
        self._stale = True
        self._version += 1
        logger.debug("Awareness invalidated", version=self._version)

    def bump_version(self):
        self._version += 1

    def mark_stale(self):
        """Force a refresh without counting a domain change, used after a restart"""
        self._stale = True

    def restore(self, snapshot: Optional[AwarenessSnapshot], stale: bool, version: int):
        self._snapshot = snapshot
        self._stale = stale
        self._version = version
