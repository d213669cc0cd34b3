"""
Observation sources feeding the liveness state machine.

Every source is an async context manager: resources (camera handles, model
sessions, queues) are acquired on entry and released on exit, including
when the verification task is cancelled. ``next_observation`` is the only
place a verification session suspends.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Union

import cv2

from ..exceptions import ObservationStreamEnded, SourceError
from ..models.data_models import Observation

logger = logging.getLogger(__name__)


class ObservationSource(ABC):
    """Pull interface over a stream of per-frame observations."""

    def __init__(self):
        self._closed = False

    async def __aenter__(self) -> "ObservationSource":
        if self._closed:
            raise SourceError("Observation source cannot be reopened")
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._closed = True
        await self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Acquire underlying resources"""

    async def close(self) -> None:
        """Release underlying resources; must be safe to call after a failed open"""

    @abstractmethod
    async def next_observation(self, want_embedding: bool = False) -> Observation:
        """
        Wait for the next observation.

        Args:
            want_embedding: Ask the source to attach an embedding. Sources
                            that always (or never) produce one may ignore it.

        Raises:
            SourceError: If the camera or a model failed
            ObservationStreamEnded: If a finite stream is exhausted
        """


class ScriptedObservationSource(ObservationSource):
    """
    Replays a prepared sequence of observations.

    Exception instances in the sequence are raised in place, which lets a
    script model a source that fails part-way through.
    """

    def __init__(
        self,
        observations: Iterable[Union[Observation, BaseException]],
        interval: float = 0.0,
    ):
        super().__init__()
        self._iterator = iter(observations)
        self.interval = interval
        self.delivered = 0

    async def next_observation(self, want_embedding: bool = False) -> Observation:
        if self.interval > 0:
            await asyncio.sleep(self.interval)
        else:
            await asyncio.sleep(0)
        try:
            item = next(self._iterator)
        except StopIteration:
            raise ObservationStreamEnded(
                "Observation stream ended", {"delivered": self.delivered}
            ) from None
        if isinstance(item, BaseException):
            raise item
        self.delivered += 1
        return item


_END = object()


class QueueObservationSource(ObservationSource):
    """
    Push interface backed by a bounded asyncio queue.

    Producers call ``push`` at whatever rate frames arrive. When the queue
    is full the oldest observation is dropped, so a slow consumer always
    sees the most recent frames rather than a growing backlog.
    """

    def __init__(self, maxsize: int = 8):
        super().__init__()
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def push(self, observation: Observation) -> None:
        if self._closed:
            return
        self._put(observation)

    def fail(self, error: SourceError) -> None:
        """Deliver a source failure to the consumer"""
        self._put(error)

    def end(self) -> None:
        """Signal that no more observations will arrive"""
        self._put(_END)

    def _put(self, item) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def next_observation(self, want_embedding: bool = False) -> Observation:
        item = await self._queue.get()
        if item is _END:
            raise ObservationStreamEnded("Observation stream ended")
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


class FrameObservationSource(ObservationSource):
    """
    Reads frames from an OpenCV capture device and turns each one into an
    Observation with a frame adapter.

    Blocking capture reads and model inference run in the default executor
    so the event loop keeps serving other sessions.
    """

    def __init__(
        self,
        adapter,
        camera_index: int = 0,
        interval: float = 0.1,
        capture_factory: Callable[[int], "cv2.VideoCapture"] = cv2.VideoCapture,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.adapter = adapter
        self.camera_index = camera_index
        self.interval = interval
        self._capture_factory = capture_factory
        self._clock = clock
        self._capture = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        capture = await loop.run_in_executor(None, self._capture_factory, self.camera_index)
        if capture is None or not capture.isOpened():
            if capture is not None:
                capture.release()
            raise SourceError("Camera could not be opened", {"camera_index": self.camera_index})
        self._capture = capture
        logger.info(f"Camera {self.camera_index} opened")

    async def close(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self.camera_index} released")

    async def next_observation(self, want_embedding: bool = False) -> Observation:
        if self._capture is None:
            raise SourceError("Camera is not open")
        if self.interval > 0:
            await asyncio.sleep(self.interval)

        loop = asyncio.get_running_loop()
        try:
            ok, frame = await loop.run_in_executor(None, self._capture.read)
        except cv2.error as e:
            raise SourceError("Camera read failed", {"camera_index": self.camera_index}) from e
        if not ok or frame is None:
            raise SourceError("Camera returned no frame", {"camera_index": self.camera_index})

        timestamp = self._clock()
        return await loop.run_in_executor(
            None, self.adapter.observe, frame, timestamp, want_embedding
        )
