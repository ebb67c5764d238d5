from __future__ import annotations

from byblos.integrations.common import (
    IntegrationDisabledError,
    IntegrationMisconfiguredError,
    payd_credentials,
    provider_health,
)
from byblos.integrations.payments.base import PaymentsProvider
from byblos.integrations.payments.mock_provider import MockPaymentsProvider
from byblos.integrations.payments.payd_provider import PaydPaymentsProvider


def build_payments_provider(config) -> PaymentsProvider:
    provider = (config.get("PAYMENT_PROVIDER") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("payments")
    if provider == "mock":
        return MockPaymentsProvider(default_status=config.get("MOCK_PAYMENT_STATUS") or "PENDING")
    if provider != "payd":
        raise IntegrationMisconfiguredError("payments", f"provider={provider}")
    return PaydPaymentsProvider(**payd_credentials(config, kind="payments"))


def payment_health(config) -> dict:
    return provider_health(config, kind="payments", setting="PAYMENT_PROVIDER")
