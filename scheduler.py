# scheduler.py
import asyncio

from loguru import logger

from compare_core import CFG, Config, Frame
from embedder import EmbedderNotReady, InferenceFailure
from similarity import cosine_similarity


async def run_scoring_cycle(embedder, before: Frame, current: Frame, before_emb=None) -> float:
    """Embed both frames (or reuse `before_emb`) and return their cosine similarity."""
    if before_emb is None:
        before_emb = await embedder.embed(before)
    current_emb = await embedder.embed(current)
    return cosine_similarity(before_emb, current_emb)


class ScoringScheduler:
    """
    Scores the live frame against one `before` reference at a fixed interval.

    Each tick samples `sample_frame()` and spawns an independent cycle task;
    cycles are not serialized, so whichever finishes last is the one left in
    state. stop() cancels the ticker and every in-flight cycle before it
    returns, so nothing started for the old reference can report afterwards.
    """

    def __init__(self, embedder, sample_frame, on_score, cfg: Config = CFG, sleep=asyncio.sleep):
        self.embedder = embedder
        self.sample_frame = sample_frame
        self.on_score = on_score
        self.cfg = cfg
        self._sleep = sleep

        self._ticker: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()
        self._before: Frame | None = None
        self._before_emb_task: asyncio.Task | None = None
        self.cycles_completed = 0
        self.cycles_dropped = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def in_flight(self) -> int:
        return len(self._cycles)

    def start(self, before: Frame) -> None:
        self.stop()
        self._before = before
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop(before))
        logger.debug("Scoring scheduler started (every {:.0f} ms)", self.cfg.score_interval_s * 1000)

    def stop(self) -> None:
        was_running = self.running
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        for task in list(self._cycles):
            task.cancel()
        self._cycles.clear()
        self._before = None
        if self._before_emb_task is not None:
            self._before_emb_task.cancel()
            self._before_emb_task = None
        if was_running:
            logger.debug("Scoring scheduler stopped")

    async def _tick_loop(self, before: Frame) -> None:
        while True:
            await self._sleep(self.cfg.score_interval_s)
            current = self.sample_frame()
            if current is None:
                logger.debug("No live frame, tick skipped")
                continue
            task = asyncio.get_running_loop().create_task(self._cycle(before, current))
            self._cycles.add(task)
            task.add_done_callback(self._cycle_done)

    async def _cycle(self, before: Frame, current: Frame) -> None:
        try:
            before_emb = await self._reference_embedding(before)
            score = await run_scoring_cycle(self.embedder, before, current, before_emb)
        except (InferenceFailure, EmbedderNotReady) as e:
            self.cycles_dropped += 1
            logger.warning("Scoring cycle dropped: {}", e)
            return

        if before is not self._before:
            return
        self.cycles_completed += 1
        self.on_score(before, score)

    async def _reference_embedding(self, before: Frame):
        """Shared embedding of the before frame, one in-flight task per reference."""
        if not self.cfg.cache_before_embedding:
            return None
        if self._before_emb_task is None:
            self._before_emb_task = asyncio.get_running_loop().create_task(self.embedder.embed(before))
        task = self._before_emb_task
        try:
            return await asyncio.shield(task)
        except (InferenceFailure, EmbedderNotReady):
            if self._before_emb_task is task:
                self._before_emb_task = None
            raise

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Scoring cycle failed")
