"""Audit trail for inbound webhooks.

The durable audit writer lives outside this service; AuditSink is the seam
it plugs into. LogAuditSink is the default and writes one structured log
line per accepted webhook.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_MAX_PAYLOAD_PREVIEW = 500


@runtime_checkable
class AuditSink(Protocol):
    """Receives a record of every accepted webhook."""

    def record_webhook(self, webhook_id: str, topic: str, payload: dict[str, Any]) -> None:
        ...


class LogAuditSink:
    """Audit sink that writes through the logging system."""

    def record_webhook(self, webhook_id: str, topic: str, payload: dict[str, Any]) -> None:
        preview = json.dumps(payload, default=str)
        if len(preview) > _MAX_PAYLOAD_PREVIEW:
            preview = preview[:_MAX_PAYLOAD_PREVIEW] + "..."
        logger.info("AUDIT webhook_id=%s topic=%s payload=%s", webhook_id, topic, preview)
