# camera.py
import asyncio

import cv2
from loguru import logger

from compare_core import CFG, Config, FacingMode, Frame, Observable

PORTRAIT_ASPECT = 3 / 4
LANDSCAPE_ASPECT = 4 / 3


class CameraAccessFailure(RuntimeError):
    pass


def aspect_ratio_for(width: int, height: int) -> float:
    """3:4 when the display is portrait, 4:3 otherwise."""
    return PORTRAIT_ASPECT if height > width else LANDSCAPE_ASPECT


def open_camera(index: int, width: int, height: int, backend: int = CFG.cam_backend):
    cap = cv2.VideoCapture(index, backend)
    if not cap.isOpened():
        cap.release()
        raise CameraAccessFailure(f"could not open camera {index}")

    # Reduce latency
    cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    return cap


class FrameSource:
    """
    Live stream handle. poll() pulls the newest frame from the device;
    current_frame() returns the last polled frame, or None before the first.
    """

    def __init__(self, cap, facing_mode: FacingMode):
        self.cap = cap
        self.facing_mode = facing_mode
        self._latest: Frame | None = None

    def poll(self) -> Frame | None:
        if self.cap is None:
            return None
        self.cap.grab()
        ok, frame_bgr = self.cap.read()
        if ok and frame_bgr is not None:
            self._latest = Frame.from_bgr(frame_bgr)
        return self._latest

    def current_frame(self) -> Frame | None:
        return self._latest

    def release(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        self._latest = None


class CameraSession:
    """
    Owns facing-mode selection and stream (re)acquisition.

    Acquisitions are serialized. The new device is opened before the current
    one is released, so a failed open leaves the working stream and the
    facing mode untouched. It never touches capture state.
    """

    def __init__(self, cfg: Config = CFG, opener=open_camera):
        self.cfg = cfg
        self.opener = opener
        self.facing_mode = Observable(cfg.default_facing)
        self.source: FrameSource | None = None
        self.can_switch = False
        self.aspect_ratio = LANDSCAPE_ASPECT
        self._lock = asyncio.Lock()

    @property
    def switching(self) -> bool:
        return self._lock.locked()

    def _index_for(self, facing: FacingMode) -> int:
        return self.cfg.cam_index_front if facing is FacingMode.FRONT else self.cfg.cam_index_back

    async def acquire(self, facing_mode: FacingMode | None = None, aspect_ratio: float | None = None) -> FrameSource:
        async with self._lock:
            if aspect_ratio is not None:
                self.aspect_ratio = aspect_ratio
            if facing_mode is None:
                facing_mode = self.facing_mode.value
            return await self._open(facing_mode)

    async def switch(self) -> FrameSource:
        async with self._lock:
            return await self._open(self.facing_mode.value.flipped())

    async def _open(self, facing_mode: FacingMode) -> FrameSource:
        width = self.cfg.frame_width
        height = int(round(width / self.aspect_ratio))
        index = self._index_for(facing_mode)

        try:
            cap = await asyncio.to_thread(self.opener, index, width, height, self.cfg.cam_backend)
        except CameraAccessFailure:
            raise
        except Exception as e:
            raise CameraAccessFailure(str(e)) from e

        old, self.source = self.source, FrameSource(cap, facing_mode)
        if old is not None:
            old.release()
        self.facing_mode.set(facing_mode)
        logger.info("Camera {} acquired ({}, {}x{})", index, facing_mode.value, width, height)
        return self.source

    async def detect_switchable(self) -> bool:
        """Check whether the camera for the other facing mode can be opened."""
        other = self.facing_mode.value.flipped()
        index = self._index_for(other)
        if index == self._index_for(self.facing_mode.value):
            self.can_switch = False
            return False
        try:
            cap = await asyncio.to_thread(self.opener, index, 320, 240, self.cfg.cam_backend)
        except Exception as e:
            logger.debug("No {} camera at index {}: {}", other.value, index, e)
            self.can_switch = False
        else:
            cap.release()
            self.can_switch = True
        return self.can_switch

    def current_frame(self) -> Frame | None:
        return self.source.current_frame() if self.source is not None else None

    def release(self) -> None:
        if self.source is not None:
            self.source.release()
            self.source = None
