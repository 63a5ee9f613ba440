import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Set

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class EventDispatcher:
    """Callback registry for one component's published events.

    Plain callables run inline, in registration order, before ``emit`` returns,
    so subscribers observe events in emission order. Coroutine handlers are
    scheduled as tasks on the running loop instead of being awaited.
    """

    def __init__(self, owner: str, events: Iterable[str]):
        self.owner = owner
        self._handlers: Dict[str, List[Handler]] = {name: [] for name in events}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Handler) -> None:
        if event not in self._handlers:
            raise ValueError(f"{self.owner} does not publish '{event}'")
        self._handlers[event].append(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
            except Exception:
                logger.exception("%s handler for '%s' failed", self.owner, event)
                continue
            if asyncio.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    logger.warning("%s async handler for '%s' dropped: no running loop", self.owner, event)
                    continue
                task = loop.create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s async handler failed: %s", self.owner, exc)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
