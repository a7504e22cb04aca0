from __future__ import annotations

from escrowhub.integrations.common import IntegrationMisconfiguredError
from escrowhub.integrations.payments.base import PaymentsProvider
from escrowhub.integrations.payments.mock_provider import MockPaymentsProvider
from escrowhub.integrations.payments.payos_provider import PayOSPaymentsProvider
from escrowhub.utils.config import env_str

_PAYOS_REQUIRED = ("PAYOS_CLIENT_ID", "PAYOS_API_KEY", "PAYOS_CHECKSUM_KEY")


def configured_provider_name() -> str:
    return env_str("PAYMENTS_PROVIDER", "mock").lower()


def build_payments_provider() -> PaymentsProvider:
    provider = configured_provider_name()
    if provider == "mock":
        return MockPaymentsProvider()
    if provider != "payos":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    missing = [name for name in _PAYOS_REQUIRED if not env_str(name)]
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {','.join(missing)}")
    return PayOSPaymentsProvider(
        client_id=env_str("PAYOS_CLIENT_ID"),
        api_key=env_str("PAYOS_API_KEY"),
        checksum_key=env_str("PAYOS_CHECKSUM_KEY"),
        return_url=env_str("PAYOS_RETURN_URL", "http://localhost:3000/checkout/success"),
        cancel_url=env_str("PAYOS_CANCEL_URL", "http://localhost:3000/checkout/success?cancel=true"),
    )


def payment_health() -> dict:
    provider = configured_provider_name()
    missing = []
    if provider == "payos":
        missing = [name for name in _PAYOS_REQUIRED if not env_str(name)]
    if provider not in ("mock", "payos"):
        status = "misconfigured"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
