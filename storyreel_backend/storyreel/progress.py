import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Union

from .models import ProductionProgress, ProductionStage

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Queue of progress events the host drains on its own schedule.

    ``publish`` never blocks the pipeline. Iterating the channel ends once
    ``close`` has been called and the queued events are consumed.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.latest: Optional[ProductionProgress] = None

    def publish(self, progress: ProductionProgress) -> None:
        self.latest = progress
        self._queue.put_nowait(progress)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProductionProgress]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


ProgressSink = Union[Callable[[ProductionProgress], None], ProgressChannel]


class ProgressReporter:
    """Publishes progress, never letting the percentage go backwards."""

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._percentage = 0

    @property
    def percentage(self) -> int:
        return self._percentage

    def report(
        self,
        stage: ProductionStage,
        step: str,
        percentage: int,
        current_scene: Optional[int] = None,
        total_scenes: Optional[int] = None,
    ) -> ProductionProgress:
        self._percentage = max(self._percentage, min(100, percentage))
        progress = ProductionProgress(
            stage=stage,
            step=step,
            percentage=self._percentage,
            current_scene=current_scene,
            total_scenes=total_scenes,
        )
        if isinstance(self._sink, ProgressChannel):
            self._sink.publish(progress)
        elif self._sink is not None:
            try:
                self._sink(progress)
            except Exception as e:
                # A broken progress consumer must not take the production down.
                logger.warning(f"Progress callback failed: {e}")
        return progress
