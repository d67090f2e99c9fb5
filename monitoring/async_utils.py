import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def drain_or_cancel(tasks: Iterable[asyncio.Task], grace_s: float) -> int:
    """Give in-flight tasks ``grace_s`` seconds to finish, then cancel the rest.

    Returns the number of tasks that had to be cancelled.
    """
    pending = [t for t in tasks if not t.done()]
    if pending and grace_s > 0:
        _, still_running = await asyncio.wait(pending, timeout=grace_s)
        pending = list(still_running)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning("Cancelled %s tasks still running after %.1fs grace", len(pending), grace_s)
    return len(pending)


async def run_every(interval_s: float, tick: Callable[[], Awaitable[None]], name: str,
                    stop: asyncio.Event) -> None:
    """Run ``tick`` on a fixed cadence until ``stop`` is set.

    Ticks never overlap; a tick that overruns its slot pushes the schedule
    forward instead of firing a burst of catch-up ticks.
    """
    loop = asyncio.get_running_loop()
    next_at = loop.time()
    while not stop.is_set():
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s tick failed", name)
        next_at += interval_s
        now = loop.time()
        if next_at < now:
            skipped = int((now - next_at) // interval_s) + 1
            logger.warning("%s tick overran; skipping %s slot(s)", name, skipped)
            next_at += skipped * interval_s
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, next_at - now))
        except asyncio.TimeoutError:
            pass
