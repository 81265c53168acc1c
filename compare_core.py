# compare_core.py
import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum

import cv2
import numpy as np
from loguru import logger


class FacingMode(Enum):
    FRONT = "front"
    BACK = "back"

    def flipped(self) -> "FacingMode":
        return FacingMode.BACK if self is FacingMode.FRONT else FacingMode.FRONT


# =========================
# Config
# =========================
@dataclass(frozen=True)
class Config:
    # Scoring
    score_interval_s: float = 0.3
    cache_before_embedding: bool = False

    # Similarity bands (score <= low -> low, <= high -> medium, else high)
    band_low: float = 0.5
    band_high: float = 0.7

    # Model
    model_name: str = "ViT-B-32"
    pretrained: str = "laion2b_s34b_b79k"
    input_size: tuple = (224, 224)
    device: str | None = None

    # Camera
    cam_index_front: int = 0
    cam_index_back: int = 1
    cam_backend: int = cv2.CAP_ANY
    frame_width: int = 1280
    default_facing: FacingMode = FacingMode.FRONT


CFG = Config()


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def config_from_env(base: Config = CFG, environ=None) -> Config:
    """Return `base` with COMPARE_* environment overrides applied."""
    env = os.environ if environ is None else environ
    casts = {
        "COMPARE_SCORE_INTERVAL": ("score_interval_s", float),
        "COMPARE_CACHE_BEFORE": ("cache_before_embedding", _env_bool),
        "COMPARE_MODEL": ("model_name", str),
        "COMPARE_PRETRAINED": ("pretrained", str),
        "COMPARE_DEVICE": ("device", str),
        "COMPARE_CAM_FRONT": ("cam_index_front", int),
        "COMPARE_CAM_BACK": ("cam_index_back", int),
    }
    overrides = {}
    for key, (name, cast) in casts.items():
        raw = env.get(key)
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = cast(raw)
        except ValueError:
            logger.warning("Ignoring {}={!r}: not a valid {}", key, raw, cast.__name__)
    return replace(base, **overrides) if overrides else base


# =========================
# Frames + capture states
# =========================
@dataclass(frozen=True, eq=False)
class Frame:
    """RGB snapshot of the live stream. The pixel buffer is read-only."""
    pixels: np.ndarray
    captured_at: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"expected (H, W, 3) pixels, got {self.pixels.shape}")
        self.pixels.flags.writeable = False

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_bgr(cls, frame_bgr: np.ndarray) -> "Frame":
        return cls(np.ascontiguousarray(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)))

    def to_bgr(self) -> np.ndarray:
        return cv2.cvtColor(self.pixels, cv2.COLOR_RGB2BGR)


@dataclass(frozen=True)
class Live:
    pass


@dataclass(frozen=True)
class BeforeCaptured:
    before: Frame
    last_score: float | None = None


@dataclass(frozen=True)
class AfterCaptured:
    before: Frame
    after: Frame
    last_score: float | None = None


# =========================
# Observable value
# =========================
class Observable:
    """Current value plus synchronous change notification."""

    def __init__(self, value=None):
        self._value = value
        self._subscribers = []

    @property
    def value(self):
        return self._value

    def set(self, value) -> None:
        if value is self._value or _same(value, self._value):
            return
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("Observer callback failed")

    def subscribe(self, callback):
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe


def _same(a, b) -> bool:
    # NaN != NaN, but re-publishing NaN is not a change
    if isinstance(a, float) and isinstance(b, float):
        return a == b or (a != a and b != b)
    try:
        return bool(a == b)
    except ValueError:
        return False


# =========================
# Capture state machine
# =========================
class CaptureStateMachine:
    """
    Live -> BeforeCaptured -> AfterCaptured, with reset() back to Live.

    Commands whose preconditions are not met return False and leave the state
    untouched. `is_ready` gates captures on the embedder being loaded.
    `on_freeze` runs synchronously inside capture_after(), before it returns.
    """

    def __init__(self, is_ready=lambda: True, on_freeze=None):
        self.state = Observable(Live())
        self._is_ready = is_ready
        self._on_freeze = on_freeze

    @property
    def current(self):
        return self.state.value

    def can_capture_before(self) -> bool:
        return isinstance(self.current, Live) and self._is_ready()

    def can_capture_after(self) -> bool:
        return isinstance(self.current, BeforeCaptured) and self._is_ready()

    def can_reset(self) -> bool:
        return not isinstance(self.current, Live)

    def capture_before(self, frame: Frame | None) -> bool:
        if frame is None or not self.can_capture_before():
            logger.debug("capture_before refused in {}", type(self.current).__name__)
            return False
        self.state.set(BeforeCaptured(before=frame))
        logger.info("Before frame captured ({}x{})", frame.width, frame.height)
        return True

    def capture_after(self, frame: Frame | None) -> bool:
        if frame is None or not self.can_capture_after():
            logger.debug("capture_after refused in {}", type(self.current).__name__)
            return False
        cur = self.current
        frozen = AfterCaptured(before=cur.before, after=frame, last_score=None)
        if self._on_freeze is not None:
            self._on_freeze(frozen)
        self.state.set(frozen)
        logger.info("After frame captured, comparison frozen")
        return True

    def record_score(self, before: Frame, score: float) -> bool:
        cur = self.current
        if not isinstance(cur, BeforeCaptured) or cur.before is not before:
            return False
        self.state.set(replace(cur, last_score=score))
        return True

    def record_final_score(self, after: Frame, score: float) -> bool:
        cur = self.current
        if not isinstance(cur, AfterCaptured) or cur.after is not after:
            return False
        self.state.set(replace(cur, last_score=score))
        return True

    def reset(self) -> None:
        self.state.set(Live())
        logger.info("Reset to live")
