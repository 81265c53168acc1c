# app.py
import asyncio
import os
from contextlib import suppress

from loguru import logger

os.environ["OPENCV_LOG_LEVEL"] = "ERROR"   # or "SILENT" if supported

from app_ui import DISPLAY_H, DISPLAY_W, run_app_loop
from camera import CameraSession, aspect_ratio_for
from compare_core import config_from_env
from embedder import get_gateway
from session import ComparisonSession


async def run():
    cfg = config_from_env()
    session = ComparisonSession(get_gateway(cfg), CameraSession(cfg), cfg)

    start_task = asyncio.create_task(session.start(aspect_ratio_for(DISPLAY_W, DISPLAY_H)))
    try:
        await run_app_loop(session)
    finally:
        start_task.cancel()
        with suppress(asyncio.CancelledError):
            await start_task
        await session.close()
        logger.info("Session closed")


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
