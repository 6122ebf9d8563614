from __future__ import annotations

import asyncio

from pathlib import Path
from typing import List

import pytest

from facegate.app import CaptureRecognizer, ReferenceCacheConfig
from facegate.face.descriptor import DescriptorExtractor
from facegate.face.gallery import ReferenceSet
from facegate.face.matcher import MatcherConfig, MatcherSlot
from facegate.pipeline.recognition import OutcomeStatus, RecognitionOutcome, RecognitionPipeline
from facegate.pipeline.scheduler import CaptureScheduler, SchedulerConfig
from facegate.store.references import ReferenceEntry, ReferenceStore

from fakes import FakeProvider, FakeSource, encode_png, vec


class ListStore(ReferenceStore):
    def __init__(self, entries: List[ReferenceEntry], delay: float = 0.0, fail: bool = False):
        self.entries = entries
        self.delay = delay
        self.fail = fail
        self.calls = 0

    async def list_references(self) -> List[ReferenceEntry]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("store offline")
        return list(self.entries)


def _photo(tmp_path: Path, name: str, tag: int) -> str:
    p = tmp_path / name
    p.write_bytes(encode_png(tag))
    return str(p)


def _app(store, *, cache_dir=None, rebuild=False, interval=0.02, outcomes=None, rebuild_interval=None):
    provider = FakeProvider({1: vec(0.1, 0.2, 0.3)})
    source = FakeSource([1])
    extractor = DescriptorExtractor(provider)
    matchers = MatcherSlot(MatcherConfig(device="cpu"))
    pipeline = RecognitionPipeline(
        source, extractor, matchers, on_outcome=outcomes.append if outcomes is not None else None
    )
    scheduler = CaptureScheduler(source, extractor, pipeline, SchedulerConfig(interval=interval))
    app = CaptureRecognizer(
        source,
        extractor,
        store,
        matchers,
        pipeline,
        scheduler,
        cache_config=ReferenceCacheConfig(cache_dir=cache_dir, rebuild=rebuild),
        rebuild_interval=rebuild_interval,
    )
    return app, source


@pytest.mark.asyncio
async def test_refresh_builds_matcher_and_writes_cache(tmp_path: Path):
    store = ListStore([ReferenceEntry("alice", _photo(tmp_path, "a.png", 1))])
    app, _ = _app(store, cache_dir=str(tmp_path / "cache"))

    assert await app.refresh_references() is True

    assert app.matchers.ready
    cached = ReferenceSet.load(tmp_path / "cache")
    assert cached.identities == ["alice"]


@pytest.mark.asyncio
async def test_store_failure_keeps_current_matcher(tmp_path: Path):
    store = ListStore([ReferenceEntry("alice", _photo(tmp_path, "a.png", 1))])
    app, _ = _app(store)
    await app.refresh_references()
    before = app.matchers.current

    store.fail = True
    assert await app.refresh_references() is False
    assert app.matchers.current is before


@pytest.mark.asyncio
async def test_cached_index_skips_the_store(tmp_path: Path):
    ReferenceSet.from_pairs([("bob", vec(0.1, 0.2, 0.3))]).save(tmp_path)
    store = ListStore([])
    app, _ = _app(store, cache_dir=str(tmp_path))

    assert await app.load_or_build_references() is True
    assert store.calls == 0
    assert app.matchers.current.match(vec(0.1, 0.2, 0.3)).identity_id == "bob"


@pytest.mark.asyncio
async def test_rebuild_flag_ignores_cache(tmp_path: Path):
    ReferenceSet.from_pairs([("bob", vec(0.1, 0.2, 0.3))]).save(tmp_path)
    store = ListStore([ReferenceEntry("alice", _photo(tmp_path, "a.png", 1))])
    app, _ = _app(store, cache_dir=str(tmp_path), rebuild=True)

    await app.load_or_build_references()

    assert store.calls == 1
    assert app.matchers.current.match(vec(0.1, 0.2, 0.3)).identity_id == "alice"


@pytest.mark.asyncio
async def test_captures_before_index_is_ready_report_no_matcher_then_known(tmp_path: Path):
    outcomes: List[RecognitionOutcome] = []
    store = ListStore([ReferenceEntry("alice", _photo(tmp_path, "a.png", 1))], delay=0.1)
    app, source = _app(store, outcomes=outcomes)

    await app.run(max_seconds=0.3)

    statuses = [o.status for o in outcomes]
    assert OutcomeStatus.NO_MATCHER in statuses
    assert OutcomeStatus.KNOWN in statuses
    assert statuses.index(OutcomeStatus.NO_MATCHER) < statuses.index(OutcomeStatus.KNOWN)
    assert source.closed
    assert not app.scheduler.running
    assert not app.scheduler.lock.held


@pytest.mark.asyncio
async def test_run_stops_when_event_is_set(tmp_path: Path):
    store = ListStore([])
    app, source = _app(store, rebuild_interval=0.05)
    stop = asyncio.Event()

    task = asyncio.create_task(app.run(stop_event=stop))
    await asyncio.sleep(0.12)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert store.calls >= 2
    assert source.closed
    assert not app.matchers.ready


@pytest.mark.asyncio
async def test_empty_rebuild_drops_cache_so_restart_stays_disabled(tmp_path: Path):
    ReferenceSet.from_pairs([("removed", vec(0.1, 0.2, 0.3))]).save(tmp_path)

    first, _ = _app(ListStore([]), cache_dir=str(tmp_path), rebuild=True)
    assert await first.load_or_build_references() is False
    assert not first.matchers.ready
    assert ReferenceSet.load(tmp_path) is None

    restarted, _ = _app(ListStore([]), cache_dir=str(tmp_path))
    assert await restarted.load_or_build_references() is False
    assert not restarted.matchers.ready


@pytest.mark.asyncio
async def test_store_failure_leaves_cache_in_place(tmp_path: Path):
    ReferenceSet.from_pairs([("bob", vec(0.1, 0.2, 0.3))]).save(tmp_path)
    app, _ = _app(ListStore([], fail=True), cache_dir=str(tmp_path))

    assert await app.refresh_references() is False
    assert ReferenceSet.load(tmp_path).identities == ["bob"]


@pytest.mark.asyncio
async def test_periodic_rebuild_skipped_while_initial_build_runs(tmp_path: Path):
    store = ListStore([ReferenceEntry("alice", _photo(tmp_path, "a.png", 1))], delay=0.25)
    app, _ = _app(store, rebuild_interval=0.05)

    await app.run(max_seconds=0.2)

    # the initial listing is still in flight for the whole run; every periodic slot is skipped
    assert store.calls == 1
