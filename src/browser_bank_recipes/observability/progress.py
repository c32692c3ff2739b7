"""Progress channel: fan-out of playback progress events to subscribers."""

import logging
from collections.abc import Callable

from .models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Publishes ProgressEvent objects to registered listeners.

    Listeners are called synchronously in registration order. A failing
    listener is logged and does not affect the others or the playback run.
    """

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self.last_event: ProgressEvent | None = None

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        self.last_event = event
        logger.debug(f"Progress [{event.type.value}] {event.step_index}/{event.total_steps}: {event.description}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
