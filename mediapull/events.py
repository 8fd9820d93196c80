"""
Progress channel: best-effort push of manager events to subscribers.

Events are `(event_type, payload)` tuples. Job snapshots travel as
`('job_progress', Job)`, launch-health notices as `('engine_status', dict)`.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, List, Tuple

JOB_PROGRESS = 'job_progress'
ENGINE_STATUS = 'engine_status'
ENGINE_UPDATE_AVAILABLE = 'engine_update_available'

Event = Tuple[str, Any]
Subscriber = Callable[[Event], Any]


class ProgressChannel:
    """
    Fans events out to subscribers.

    Delivery is best-effort: a failing subscriber is logged and skipped, and
    never affects the publisher. The job store, not this channel, is the
    source of truth.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Registers a sync or async callback.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def publish(self, event: Event):
        """Delivers one event to every subscriber."""
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(f"Subscriber failed while handling '{event[0]}' event.")
