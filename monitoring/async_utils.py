import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List

logger = logging.getLogger(__name__)


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> int:
    """Cancel unfinished tasks and wait for them to unwind; returns how many were cancelled."""
    pending = [t for t in tasks if t is not None and not t.done()]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return len(pending)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Await the long-running service tasks; whichever way they end, cancel the rest and clean up.

    A task failing with an exception stops the whole group; the exception is
    logged and re-raised after cleanup.
    """
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Service task failed; shutting down")
        raise
    finally:
        await cancel_tasks(task_list)
        if cleanup is not None:
            await cleanup()
