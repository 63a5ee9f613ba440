import asyncio
from typing import Iterable, List


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    """Cancel every unfinished task and wait until all of them have settled."""
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        await asyncio.gather(*task_list, return_exceptions=True)
