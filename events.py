"""Best-effort exam event publishing (ExamStarted, ExamCompleted, ExamExpired).

Event delivery is not part of the exam flow: a failing handler is logged
and the caller carries on.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

EVENT_SOURCE = "certification.exam-practice"


class EventPublisher:
    def __init__(self, source=EVENT_SOURCE):
        self.source = source
        self._handlers = []

    def subscribe(self, handler):
        """Register ``handler(event)``; ``event`` is a dict with type, source, time and detail."""
        self._handlers.append(handler)
        return handler

    def publish(self, event_type, detail):
        event = {
            "type": event_type,
            "source": self.source,
            "time": datetime.now(timezone.utc).isoformat(),
            "detail": detail,
        }
        logger.debug("Publishing %s: %s", event_type, detail)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.warning("Failed to deliver %s event to %r", event_type, handler, exc_info=True)
        return event
