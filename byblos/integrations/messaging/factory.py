from __future__ import annotations

from byblos.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from byblos.integrations.messaging.base import MessagingProvider
from byblos.integrations.messaging.log_provider import LogMessagingProvider


def build_messaging_provider(config) -> MessagingProvider:
    provider = (config.get("NOTIFICATIONS_PROVIDER") or "log").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("notifications")
    if provider == "log":
        return LogMessagingProvider()
    raise IntegrationMisconfiguredError("notifications", f"provider={provider}")
