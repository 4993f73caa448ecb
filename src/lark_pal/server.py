from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Optional

from .config import ServiceConfig, load_config
from .controller import RoomController
from .lark_client import LarkChatSource, LarkEventBridge, LarkSender, build_client, fetch_bot_open_id
from .llm import build_model_backend

logger = logging.getLogger("lark_pal_server")


async def run_service(config: ServiceConfig) -> None:
    if not config.lark.chat_id:
        raise RuntimeError("lark chat_id not configured")
    backend = build_model_backend(config.llm)
    client = build_client(config.lark)
    bot_id = await asyncio.to_thread(fetch_bot_open_id, client)
    controller = RoomController(
        room_id=config.lark.chat_id,
        state_dir=config.storage.state_dir,
        source=LarkChatSource(client, config.lark.chat_id, page_size=config.lark.page_size),
        backend=backend,
        sender=LarkSender(client),
        assistant=config.assistant,
        llm=config.llm,
        lark=config.lark,
        bot_id=bot_id,
    )
    logger.info(
        "Room %s: %d stored messages, cursor=%s",
        controller.room_id,
        len(controller.store),
        controller.cursor.get(),
    )

    stop = asyncio.Event()
    failures: list[BaseException] = []

    def on_fatal(exc: BaseException) -> None:
        failures.append(exc)
        stop.set()

    def on_rescan_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("History rescan stopped", exc_info=task.exception())
            on_fatal(task.exception())

    bridge = LarkEventBridge(config.lark, controller, asyncio.get_running_loop(), on_fatal=on_fatal)
    await controller.sync_history()
    bridge.start()
    rescan_task = asyncio.create_task(controller.rescan_loop(config.lark.rescan_interval_seconds))
    rescan_task.add_done_callback(on_rescan_done)
    try:
        await stop.wait()
        if failures:
            raise failures[0]
    finally:
        bridge.stop()
        rescan_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await rescan_task
        await controller.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Lark group-chat reply assistant")
    parser.add_argument("--config", default=None)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)
    config = load_config(args.config)
    level = (args.log_level or config.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        asyncio.run(run_service(config))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
