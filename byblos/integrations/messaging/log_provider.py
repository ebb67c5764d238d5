from __future__ import annotations

import json
import os
import uuid

from flask import current_app

from byblos.integrations.messaging.base import MessagingProvider, MessageResult


class LogMessagingProvider(MessagingProvider):
    """Writes messages to the application log instead of a delivery channel."""

    name = "log"
    channel = "log"

    def _force_failure(self, message: str) -> bool:
        msg = (message or "").lower()
        return "[fail]" in msg or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def send(self, *, recipient_role: str, recipient_id: int | None, message: str, reference: str = "") -> MessageResult:
        if self._force_failure(message):
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="forced failure")
        provider_ref = f"log-{uuid.uuid4().hex[:12]}"
        current_app.logger.info(
            json.dumps(
                {
                    "event": "notification_delivered",
                    "channel": self.channel,
                    "recipient_role": recipient_role,
                    "recipient_id": recipient_id,
                    "reference": reference,
                    "provider_ref": provider_ref,
                    "message": message,
                }
            )
        )
        return MessageResult(ok=True, code="OK", message="logged", provider_ref=provider_ref)
