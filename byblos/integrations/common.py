from __future__ import annotations

PAYD_DEFAULT_URL = "https://api.payd.money/api/v2"
PAYD_CREDENTIAL_KEYS = ("PAYD_USERNAME", "PAYD_PASSWORD")


class IntegrationError(RuntimeError):
    """A provider that cannot be built; ``kind`` names the integration."""

    code = "INTEGRATION_ERROR"

    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{self.code}:{kind}" + (f" {detail}" if detail else ""))


class IntegrationDisabledError(IntegrationError):
    code = "INTEGRATION_DISABLED"


class IntegrationMisconfiguredError(IntegrationError):
    code = "INTEGRATION_MISCONFIGURED"


def missing_payd_credentials(config) -> list[str]:
    return [key for key in PAYD_CREDENTIAL_KEYS if not (config.get(key) or "").strip()]


def payd_credentials(config, *, kind: str = "payd") -> dict:
    """Constructor kwargs shared by the Payd collections and payouts clients."""
    missing = missing_payd_credentials(config)
    if missing:
        raise IntegrationMisconfiguredError(kind, f"missing {','.join(missing)}")
    return {
        "base_url": config.get("PAYD_API_URL") or PAYD_DEFAULT_URL,
        "username": config.get("PAYD_USERNAME").strip(),
        "password": config.get("PAYD_PASSWORD").strip(),
    }


def provider_health(config, *, kind: str, setting: str, default: str = "mock") -> dict:
    provider = (config.get(setting) or default).strip().lower()
    missing = missing_payd_credentials(config) if provider == "payd" else []
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"kind": kind, "status": status, "provider": provider, "missing": missing}
