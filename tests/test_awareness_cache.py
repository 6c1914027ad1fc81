"""Tests for the awareness cache."""

from datetime import datetime, timedelta, timezone

from canvas_agent.domain.context.state.awareness_cache import AwarenessCache, AwarenessSnapshot, detect_domain_change


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def test_empty_cache_needs_refresh():
    cache = AwarenessCache()

    assert cache.snapshot is None
    assert cache.needs_refresh() is True


def test_capture_clears_stale_flag():
    cache = AwarenessCache()
    cache.invalidate()

    snapshot = cache.capture("Canvas with 2 elements", skeleton=["el_1", "el_2"])

    assert cache.is_stale is False
    assert cache.needs_refresh() is False
    assert cache.snapshot is snapshot
    assert snapshot.skeleton == ["el_1", "el_2"]


def test_invalidate_marks_stale_and_bumps_version_once():
    cache = AwarenessCache()
    cache.capture("Canvas with 0 elements")
    version = cache.version

    cache.invalidate()

    assert cache.is_stale is True
    assert cache.version == version + 1
    assert cache.needs_refresh() is True


def test_bump_version_keeps_snapshot_fresh():
    cache = AwarenessCache()
    cache.capture("Canvas with 0 elements")

    cache.bump_version()

    assert cache.version == 1
    assert cache.needs_refresh() is False


def test_ttl_expiry():
    clock = FakeClock()
    cache = AwarenessCache(ttl_seconds=30, clock=clock)
    cache.capture("Canvas with 0 elements")

    clock.advance(29)
    assert cache.needs_refresh() is False

    clock.advance(1)
    assert cache.is_expired() is True
    assert cache.needs_refresh() is True
    assert cache.fetched_at == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_restore():
    source = AwarenessCache()
    snapshot = source.capture("Canvas with 1 elements")

    cache = AwarenessCache()
    cache.restore(snapshot, stale=True, version=4)

    assert cache.snapshot is snapshot
    assert cache.is_stale is True
    assert cache.version == 4


def test_mark_stale_keeps_version():
    cache = AwarenessCache()
    cache.capture("Canvas with 0 elements")

    cache.mark_stale()

    assert cache.needs_refresh() is True
    assert cache.version == 0


def test_known_ids():
    snapshot = AwarenessSnapshot(summary="s", skeleton=["el_1", {"id": "el_2"}, 3], relevant=[{"name": "x"}])

    assert snapshot.known_ids() == {"el_1", "el_2"}
    assert AwarenessSnapshot(summary="s").known_ids() is None
    assert AwarenessSnapshot(summary="s", skeleton=[]).known_ids() == set()


def test_detect_domain_change():
    saved = AwarenessSnapshot(summary="Canvas with 2 elements", skeleton=["el_1", "el_2"])
    current = AwarenessSnapshot(summary="Canvas with 2 elements", skeleton=["el_2", "el_3"])

    change = detect_domain_change(saved, current)

    assert change.added == ["el_3"]
    assert change.removed == ["el_1"]
    assert change.summary_changed is False
    assert change.has_changed is True
    assert detect_domain_change(saved, saved).has_changed is False
    assert detect_domain_change(None, current).has_changed is False
