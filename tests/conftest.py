"""Shared fakes for the comparison tests."""

import asyncio
import sys
import time
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from camera import CameraAccessFailure, CameraSession
from compare_core import CFG, Frame
from embedder import EmbedderNotReady, InferenceFailure, ModelLoadFailure


def make_frame(value: int, size: int = 4) -> Frame:
    """A flat frame whose pixel value doubles as its identity for FakeEmbedder."""
    return Frame(np.full((size, size, 3), value, dtype=np.uint8))


class FakeEmbedder:
    """
    Embedder stand-in. Frames are mapped to vectors by their first pixel value.
    """

    def __init__(self, vectors=None, default=(1.0, 0.0), ready=True, load_error=None, delay=0.0):
        self.vectors = dict(vectors or {})
        self.default = default
        self.ready = ready
        self.load_error = load_error
        self.delay = delay
        self.fail_values = set()
        self.crash_values = set()
        self.calls = []
        self.load_calls = 0
        self.release_load = None

    def is_ready(self):
        return self.ready

    async def load(self):
        self.load_calls += 1
        if self.release_load is not None:
            await self.release_load.wait()
        if self.load_error is not None:
            raise ModelLoadFailure(self.load_error)
        self.ready = True
        return self

    async def embed(self, frame):
        value = int(frame.pixels[0, 0, 0])
        self.calls.append(value)
        if not self.ready:
            raise EmbedderNotReady("not loaded")
        if self.delay:
            await asyncio.sleep(self.delay)
        if value in self.fail_values:
            raise InferenceFailure(f"boom on {value}")
        if value in self.crash_values:
            raise ValueError(f"unexpected failure on {value}")
        return np.asarray(self.vectors.get(value, self.default), dtype=np.float32)


class FakeCapture:
    """cv2.VideoCapture stand-in that serves a flat BGR frame."""

    def __init__(self, index, width, height, value=10, opened=True):
        self.index = index
        self.width = width
        self.height = height
        self.value = value
        self.opened = opened
        self.released = False
        self.props = {}

    def isOpened(self):
        return self.opened

    def set(self, prop, val):
        self.props[prop] = val
        return True

    def grab(self):
        return self.opened

    def read(self):
        if not self.opened or self.value is None:
            return False, None
        return True, np.full((4, 4, 3), self.value, dtype=np.uint8)

    def release(self):
        self.released = True


class FakeOpener:
    """
    Camera opener recording every open. Indexes in `broken` fail; `delays`
    maps an index to seconds the (threaded) open blocks for.
    """

    def __init__(self, broken=(), delays=None):
        self.broken = set(broken)
        self.delays = dict(delays or {})
        self.opened = []

    def __call__(self, index, width, height, backend):
        if index in self.delays:
            time.sleep(self.delays[index])
        if index in self.broken:
            raise CameraAccessFailure(f"camera {index} unavailable")
        cap = FakeCapture(index, width, height)
        self.opened.append(cap)
        return cap


class ManualClock:
    """Drop-in for asyncio.sleep that only wakes when advance() is called."""

    def __init__(self):
        self.sleepers = []

    async def sleep(self, delay):
        fut = asyncio.get_running_loop().create_future()
        self.sleepers.append(fut)
        await fut

    @property
    def pending(self):
        return [f for f in self.sleepers if not f.done()]

    async def advance(self, ticks=1):
        for _ in range(ticks):
            sleepers, self.sleepers = self.sleepers, []
            for fut in sleepers:
                if not fut.done():
                    fut.set_result(None)
            await settle()


async def settle(rounds=10):
    """Let every ready task run to its next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fast_cfg():
    return replace(CFG, score_interval_s=0.01)


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def camera(fast_cfg, opener):
    return CameraSession(fast_cfg, opener=opener)
