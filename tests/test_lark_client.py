import asyncio

from lark_pal.lark_client import _parse_ms, dispatch_to_loop
from lark_pal.store import PersistenceError


def test_persistence_failure_from_event_handler_reaches_service():
    fatal: list[BaseException] = []

    async def failing_handler() -> None:
        raise PersistenceError("disk full")

    async def run() -> None:
        loop = asyncio.get_running_loop()
        stopped = asyncio.Event()

        def on_fatal(exc: BaseException) -> None:
            fatal.append(exc)
            stopped.set()

        # Event callbacks arrive on the SDK thread, not the loop thread.
        await asyncio.to_thread(dispatch_to_loop, failing_handler(), loop, on_fatal)
        await asyncio.wait_for(stopped.wait(), timeout=1.0)

    asyncio.run(run())
    assert len(fatal) == 1
    assert isinstance(fatal[0], PersistenceError)


def test_other_handler_errors_are_logged_not_fatal(caplog):
    fatal: list[BaseException] = []

    async def failing_handler() -> None:
        raise ValueError("bad payload")

    async def run() -> None:
        loop = asyncio.get_running_loop()
        future = await asyncio.to_thread(dispatch_to_loop, failing_handler(), loop, fatal.append)
        while not future.done():
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)

    with caplog.at_level("ERROR", logger="lark_pal_lark"):
        asyncio.run(run())
    assert fatal == []
    assert "bad payload" in caplog.text


def test_parse_ms_tolerates_missing_values():
    assert _parse_ms("1700000000123") == 1700000000123
    assert _parse_ms(None) == 0
    assert _parse_ms("soon") == 0
