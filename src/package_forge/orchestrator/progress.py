"""Progress sinks for streamed generation output."""

import logging
import time
from collections.abc import Callable

from package_forge.storage import ProjectRepository, StorageError

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 2.0  # Seconds between persisted progress writes

# Receives the cumulative text streamed so far. Used for feedback only.
ProgressSink = Callable[[str], None]


class ThrottledProgress:
    """Forward progress to a sink at most once per interval.

    The first update is always forwarded; later updates inside the interval
    are dropped, since each update carries the full cumulative text.
    """

    def __init__(
        self,
        sink: ProgressSink,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._interval = interval
        self._clock = clock
        self._last_emit: float | None = None

    def __call__(self, text: str) -> None:
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self._interval:
            return
        self._last_emit = now
        self._sink(text)


def fan_out(*sinks: ProgressSink | None) -> ProgressSink:
    """Combine several sinks into one, skipping None entries."""
    active = [sink for sink in sinks if sink is not None]

    def sink(text: str) -> None:
        for target in active:
            target(text)

    return sink


def persisting_sink(repository: ProjectRepository, project_id: str) -> ProgressSink:
    """Sink that stores progress on the project document.

    Write failures are logged and do not interrupt the generation.
    """

    def sink(text: str) -> None:
        try:
            repository.update_generation_progress(project_id, text)
        except StorageError as e:
            logger.warning("Failed to persist progress for %s: %s", project_id, e)

    return sink
