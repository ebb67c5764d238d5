from __future__ import annotations

from byblos.integrations.common import (
    IntegrationDisabledError,
    IntegrationMisconfiguredError,
    payd_credentials,
    provider_health,
)
from byblos.integrations.payouts.base import PayoutsProvider
from byblos.integrations.payouts.mock_provider import MockPayoutsProvider
from byblos.integrations.payouts.payd_provider import PaydPayoutsProvider


def build_payouts_provider(config) -> PayoutsProvider:
    provider = (config.get("PAYOUT_PROVIDER") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("payouts")
    if provider == "mock":
        return MockPayoutsProvider(force_fail=bool(config.get("MOCK_PAYOUT_FORCE_FAIL", False)))
    if provider != "payd":
        raise IntegrationMisconfiguredError("payouts", f"provider={provider}")
    return PaydPayoutsProvider(**payd_credentials(config, kind="payouts"))


def payout_health(config) -> dict:
    return provider_health(config, kind="payouts", setting="PAYOUT_PROVIDER")
