"""Periodic scoring: ticking, skipping, dropping and cancellation."""

import asyncio
from dataclasses import replace

import pytest

from conftest import FakeEmbedder, make_frame, settle
from scheduler import ScoringScheduler, run_scoring_cycle


class Recorder:
    def __init__(self):
        self.scores = []

    def __call__(self, before, score):
        self.scores.append((before, score))


def scheduler_for(embedder, sample, rec, cfg, clock):
    return ScoringScheduler(embedder, sample, rec, cfg, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_cycle_scores_before_against_current():
    embedder = FakeEmbedder(vectors={1: [1, 0], 2: [0.6, 0.8]})
    score = await run_scoring_cycle(embedder, make_frame(1), make_frame(2))
    assert score == pytest.approx(0.6)
    assert embedder.calls == [1, 2]


@pytest.mark.asyncio
async def test_one_cycle_per_tick_until_stopped(fast_cfg, clock):
    embedder = FakeEmbedder(vectors={1: [1, 0], 2: [1, 0]})
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, fast_cfg, clock)
    before = make_frame(1)

    sched.start(before)
    await settle()
    await clock.advance(3)
    assert sched.running
    assert len(rec.scores) == 3
    assert all(b is before and s == pytest.approx(1.0) for b, s in rec.scores)

    sched.stop()
    assert not sched.running
    assert clock.pending == []
    calls = len(embedder.calls)

    await clock.advance(10)
    assert len(rec.scores) == 3
    assert len(embedder.calls) == calls


@pytest.mark.asyncio
async def test_tick_without_live_frame_is_skipped(fast_cfg, clock):
    embedder = FakeEmbedder()
    rec = Recorder()
    current = {"frame": None}
    sched = scheduler_for(embedder, lambda: current["frame"], rec, fast_cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(3)
    assert rec.scores == []
    assert embedder.calls == []
    assert sched.running

    current["frame"] = make_frame(2)
    await clock.advance(1)
    sched.stop()
    assert len(rec.scores) == 1


@pytest.mark.asyncio
async def test_inference_failure_drops_cycle_and_keeps_ticking(fast_cfg, clock):
    embedder = FakeEmbedder()
    embedder.fail_values.add(2)
    current = {"frame": make_frame(2)}
    rec = Recorder()
    sched = scheduler_for(embedder, lambda: current["frame"], rec, fast_cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(2)
    assert rec.scores == []
    assert sched.cycles_dropped == 2
    assert sched.running

    current["frame"] = make_frame(3)
    await clock.advance(1)
    sched.stop()
    assert len(rec.scores) == 1


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_cycles(fast_cfg, clock):
    embedder = FakeEmbedder(delay=0.05)
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, fast_cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(2)
    assert sched.in_flight == 2

    sched.stop()
    assert sched.in_flight == 0
    await asyncio.sleep(0.15)
    assert rec.scores == []


@pytest.mark.asyncio
async def test_restart_abandons_old_reference(fast_cfg, clock):
    embedder = FakeEmbedder(delay=0.02)
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, fast_cfg, clock)
    old, new = make_frame(1), make_frame(3)

    sched.start(old)
    await settle()
    await clock.advance(1)
    assert sched.in_flight == 1

    sched.start(new)
    await settle()
    await clock.advance(1)
    await asyncio.sleep(0.1)
    sched.stop()

    assert len(rec.scores) == 1
    assert rec.scores[0][0] is new


@pytest.mark.asyncio
async def test_cached_before_embedding_shared_by_overlapping_cycles(fast_cfg, clock):
    cfg = replace(fast_cfg, cache_before_embedding=True)
    embedder = FakeEmbedder(delay=0.03)
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(3)
    assert sched.in_flight == 3

    await asyncio.sleep(0.2)
    sched.stop()

    assert len(rec.scores) == 3
    assert embedder.calls.count(1) == 1
    assert embedder.calls.count(2) == 3


@pytest.mark.asyncio
async def test_failed_cached_before_embedding_is_retried(fast_cfg, clock):
    cfg = replace(fast_cfg, cache_before_embedding=True)
    embedder = FakeEmbedder()
    embedder.fail_values.add(1)
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(1)
    assert rec.scores == []
    assert sched.cycles_dropped == 1

    embedder.fail_values.clear()
    await clock.advance(2)
    sched.stop()

    assert len(rec.scores) == 2
    assert embedder.calls.count(1) == 2


@pytest.mark.asyncio
async def test_uncached_before_embedding_recomputed_each_cycle(fast_cfg, clock):
    embedder = FakeEmbedder()
    rec = Recorder()
    frame = make_frame(2)
    sched = scheduler_for(embedder, lambda: frame, rec, fast_cfg, clock)

    sched.start(make_frame(1))
    await settle()
    await clock.advance(4)
    sched.stop()

    assert len(rec.scores) == 4
    assert embedder.calls.count(1) == 4
