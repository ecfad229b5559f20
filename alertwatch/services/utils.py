import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


async def run_periodic(
    fn: Callable[[], Awaitable[object]],
    interval: float,
    *,
    stop: Optional[asyncio.Event] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
    loop_forever: bool = True,
) -> None:
    """Run ``fn`` every ``interval`` seconds until ``stop`` is set.

    Exceptions from ``fn`` go to ``on_error`` and the loop carries on;
    cancellation propagates so the owner can shut the loop down. The stop
    event is only checked between runs, never in the middle of one.
    """
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await fn()
        except Exception as e:
            if on_error:
                on_error(e)
            else:
                logger.exception("periodic task failed")
        if not loop_forever:
            break
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
