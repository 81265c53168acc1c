# session.py
import asyncio

from loguru import logger

from camera import LANDSCAPE_ASPECT, CameraAccessFailure, CameraSession
from compare_core import CFG, AfterCaptured, BeforeCaptured, CaptureStateMachine, Config, Live, Observable
from embedder import EmbedderNotReady, InferenceFailure, ModelLoadFailure, get_gateway
from scheduler import ScoringScheduler, run_scoring_cycle

CAMERA_ERROR_PREFIX = "Error accessing camera: "
MODEL_ERROR_PREFIX = "Error loading model: "


class ComparisonSession:
    """
    What the UI talks to.

    Observables: state, similarity, is_model_loading, error_message,
    facing_mode. Commands: capture_before(), capture_after(), reset(),
    switch_camera(). All of it must be driven from one asyncio loop.
    """

    def __init__(self, embedder=None, camera: CameraSession | None = None, cfg: Config = CFG, sleep=asyncio.sleep):
        self.cfg = cfg
        self.embedder = embedder if embedder is not None else get_gateway(cfg)
        self.camera = camera if camera is not None else CameraSession(cfg)

        self.similarity = Observable(0.0)
        self.is_model_loading = Observable(True)
        self.error_message = Observable(None)
        self.facing_mode = self.camera.facing_mode

        self.machine = CaptureStateMachine(is_ready=self.embedder.is_ready, on_freeze=self._on_freeze)
        self.state = self.machine.state
        self.scheduler = ScoringScheduler(
            self.embedder, self.camera.current_frame, self._on_tick_score, cfg, sleep=sleep
        )
        self._final_task: asyncio.Task | None = None
        self.state.subscribe(self._on_state)

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self, aspect_ratio: float = LANDSCAPE_ASPECT) -> None:
        await asyncio.gather(self._setup_camera(aspect_ratio), self._load_model())

    async def close(self) -> None:
        self.scheduler.stop()
        self._cancel_final()
        self.camera.release()

    async def _setup_camera(self, aspect_ratio: float | None = None) -> bool:
        try:
            await self.camera.acquire(aspect_ratio=aspect_ratio)
        except CameraAccessFailure as e:
            logger.error("Camera acquisition failed: {}", e)
            self.error_message.set(CAMERA_ERROR_PREFIX + str(e))
            return False

        if (self.error_message.value or "").startswith(CAMERA_ERROR_PREFIX):
            self.error_message.set(None)
        await self.camera.detect_switchable()
        return True

    async def _load_model(self) -> None:
        self.is_model_loading.set(True)
        try:
            await self.embedder.load()
        except ModelLoadFailure as e:
            self.error_message.set(MODEL_ERROR_PREFIX + str(e))
        finally:
            self.is_model_loading.set(False)

    # -------------------------
    # Commands
    # -------------------------
    def capture_before(self) -> bool:
        return self.machine.capture_before(self.camera.current_frame())

    def capture_after(self) -> bool:
        if not self.machine.capture_after(self.camera.current_frame()):
            return False
        frozen = self.machine.current
        self._final_task = asyncio.get_running_loop().create_task(self._final_score(frozen))
        self._final_task.add_done_callback(_log_task_failure)
        return True

    def reset(self) -> None:
        self.scheduler.stop()
        self._cancel_final()
        self.machine.reset()
        self.similarity.set(0.0)

    async def switch_camera(self) -> bool:
        if self.is_model_loading.value:
            logger.debug("switch_camera refused while model is loading")
            return False
        if self.camera.switching:
            logger.debug("switch_camera refused while a switch is in progress")
            return False
        try:
            await self.camera.switch()
        except CameraAccessFailure as e:
            logger.error("Camera switch failed: {}", e)
            self.error_message.set(CAMERA_ERROR_PREFIX + str(e))
            return False
        if (self.error_message.value or "").startswith(CAMERA_ERROR_PREFIX):
            self.error_message.set(None)
        return True

    # -------------------------
    # Button enablement
    # -------------------------
    def can_capture_before(self) -> bool:
        return not self.is_model_loading.value and self.machine.can_capture_before()

    def can_capture_after(self) -> bool:
        return not self.is_model_loading.value and self.machine.can_capture_after()

    def can_reset(self) -> bool:
        return not self.is_model_loading.value and self.machine.can_reset()

    def can_switch_camera(self) -> bool:
        return not self.is_model_loading.value and self.camera.can_switch and not self.camera.switching

    # -------------------------
    # Internals
    # -------------------------
    def _on_state(self, state) -> None:
        if isinstance(state, BeforeCaptured):
            if not self.scheduler.running:
                self.scheduler.start(state.before)
        elif isinstance(state, Live):
            self.scheduler.stop()
            self._cancel_final()
            self.similarity.set(0.0)

    def _on_freeze(self, frozen: AfterCaptured) -> None:
        self.scheduler.stop()

    def _on_tick_score(self, before, score: float) -> None:
        if self.machine.record_score(before, score):
            self.similarity.set(score)

    async def _final_score(self, frozen: AfterCaptured) -> None:
        try:
            score = await run_scoring_cycle(self.embedder, frozen.before, frozen.after)
        except (InferenceFailure, EmbedderNotReady) as e:
            logger.warning("Final score dropped: {}", e)
            return
        if self.machine.record_final_score(frozen.after, score):
            self.similarity.set(score)
            logger.info("Final similarity {:.3f}", score)

    def _cancel_final(self) -> None:
        if self._final_task is not None:
            self._final_task.cancel()
            self._final_task = None


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error("Final score failed")
