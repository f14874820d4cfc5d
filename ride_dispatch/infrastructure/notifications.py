"""
Notification sink.

Push / SMS / e-mail delivery belongs to an external service.  The engine
only hands it short notices (driver assigned, offer waiting, manual dispatch
needed).  ``LoggingNotificationSink`` is the default when nothing is wired.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

OPERATORS = "operators"


class NotificationSink(Protocol):
    async def notify(
        self, recipient: str, kind: str, message: str, data: Optional[dict] = None
    ) -> None: ...


class LoggingNotificationSink:
    async def notify(
        self, recipient: str, kind: str, message: str, data: Optional[dict] = None
    ) -> None:
        level = logging.WARNING if recipient == OPERATORS else logging.INFO
        logger.log(level, "[notify %s] %s: %s %s", recipient, kind, message, data or {})
