"""Resolve a tenant's gateway configuration to a ready provider instance.

Providers are built per call from the tenant's decrypted credentials and
dropped afterwards, so nothing tenant-specific lives at module level. The
only process-wide state here is the table of provider factories.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from payflow.core.currencies import normalize_currency_code
from payflow.core.errors import GatewayNotConfigured, InvalidCheckoutInput
from payflow.core.money import to_money
from payflow.core.observability import log_event
from payflow.models.payment import PaymentGatewayConfig
from payflow.services.credential_store import decrypt_credentials, decrypt_secret
from payflow.services.gateways.base import GatewayProvider
from payflow.services.gateways.cod_provider import CodGatewayProvider
from payflow.services.gateways.sepay_provider import SePayGatewayProvider
from payflow.services.gateways.stripe_provider import StripeGatewayProvider

logger = logging.getLogger("payflow.gateways.registry")

PAYMENT_METHOD_CARD = "card"
PAYMENT_METHOD_BANK_TRANSFER = "bank_transfer"
PAYMENT_METHOD_COD = "cod"
PAYMENT_METHODS = (PAYMENT_METHOD_CARD, PAYMENT_METHOD_BANK_TRANSFER, PAYMENT_METHOD_COD)

_PROVIDER_FACTORIES: dict[str, Callable[[], GatewayProvider]] = {
    "stripe": StripeGatewayProvider,
    "sepay": SePayGatewayProvider,
    "cod": CodGatewayProvider,
}

_DEFAULT_METHODS: dict[str, tuple[str, ...]] = {
    "stripe": (PAYMENT_METHOD_CARD,),
    "sepay": (PAYMENT_METHOD_BANK_TRANSFER,),
    "cod": (PAYMENT_METHOD_COD,),
}


@dataclass(frozen=True)
class ResolvedGateway:
    config: PaymentGatewayConfig
    provider: GatewayProvider


def normalize_provider_code(value: str | None) -> str:
    return (value or "").strip().lower()


def register_provider(
    code: str,
    factory: Callable[[], GatewayProvider],
    *,
    default_methods: tuple[str, ...] = (),
) -> None:
    normalized = normalize_provider_code(code)
    _PROVIDER_FACTORIES[normalized] = factory
    _DEFAULT_METHODS[normalized] = default_methods


def unregister_provider(code: str) -> None:
    normalized = normalize_provider_code(code)
    _PROVIDER_FACTORIES.pop(normalized, None)
    _DEFAULT_METHODS.pop(normalized, None)


def available_providers() -> list[str]:
    return sorted(_PROVIDER_FACTORIES)


def build_provider(code: str) -> GatewayProvider:
    normalized = normalize_provider_code(code)
    factory = _PROVIDER_FACTORIES.get(normalized)
    if not factory:
        available = ", ".join(available_providers())
        raise GatewayNotConfigured(f"Unknown payment provider '{code}'. Available: {available}")
    return factory()


def supported_methods_for(config: PaymentGatewayConfig) -> tuple[str, ...]:
    if config.supported_methods:
        return tuple(str(item).strip().lower() for item in config.supported_methods)
    return _DEFAULT_METHODS.get(normalize_provider_code(config.provider), ())


def provider_for_config(config: PaymentGatewayConfig) -> GatewayProvider:
    provider = build_provider(config.provider)
    credentials = decrypt_credentials(config.encrypted_credentials)
    if config.webhook_secret and "webhook_secret" not in credentials:
        credentials["webhook_secret"] = decrypt_secret(config.webhook_secret)
    provider.initialize(credentials, config.environment)
    return provider


def get_gateway_config(
    db: Session,
    *,
    tenant_id: str,
    provider: str,
    active_only: bool = True,
) -> PaymentGatewayConfig:
    stmt = select(PaymentGatewayConfig).where(
        PaymentGatewayConfig.tenant_id == tenant_id,
        PaymentGatewayConfig.provider == normalize_provider_code(provider),
    )
    if active_only:
        stmt = stmt.where(PaymentGatewayConfig.is_active.is_(True))
    config = db.execute(stmt).scalar_one_or_none()
    if not config:
        raise GatewayNotConfigured(f"Payment provider '{provider}' is not configured for this tenant")
    return config


def get_gateway_config_by_id(db: Session, *, tenant_id: str, config_id: str) -> PaymentGatewayConfig:
    config = db.execute(
        select(PaymentGatewayConfig).where(
            PaymentGatewayConfig.id == config_id,
            PaymentGatewayConfig.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if not config:
        raise GatewayNotConfigured("Payment gateway configuration not found")
    return config


def resolve_provider(db: Session, *, tenant_id: str, provider: str) -> ResolvedGateway:
    config = get_gateway_config(db, tenant_id=tenant_id, provider=provider)
    return ResolvedGateway(config=config, provider=provider_for_config(config))


def _accepts(config: PaymentGatewayConfig, *, payment_method: str, amount: Decimal, currency: str) -> str | None:
    if payment_method not in supported_methods_for(config):
        return f"{config.provider} does not support payment method '{payment_method}'"
    currencies = {normalize_currency_code(item) for item in (config.supported_currencies or [])}
    if currencies and currency not in currencies:
        return f"{config.provider} does not accept {currency}"
    if config.min_amount is not None and amount < to_money(config.min_amount):
        return f"Amount is below the {config.provider} minimum of {to_money(config.min_amount)}"
    if config.max_amount is not None and amount > to_money(config.max_amount):
        return f"Amount is above the {config.provider} maximum of {to_money(config.max_amount)}"
    return None


def resolve_for_payment(
    db: Session,
    *,
    tenant_id: str,
    payment_method: str,
    amount: Decimal,
    currency: str,
    gateway_hint: str | None = None,
) -> ResolvedGateway:
    method = (payment_method or "").strip().lower()
    normalized_currency = normalize_currency_code(currency)
    total = to_money(amount)

    if gateway_hint:
        config = get_gateway_config(db, tenant_id=tenant_id, provider=gateway_hint)
        problem = _accepts(config, payment_method=method, amount=total, currency=normalized_currency)
        if problem:
            raise InvalidCheckoutInput(problem)
        return ResolvedGateway(config=config, provider=provider_for_config(config))

    configs = db.execute(
        select(PaymentGatewayConfig)
        .where(
            PaymentGatewayConfig.tenant_id == tenant_id,
            PaymentGatewayConfig.is_active.is_(True),
        )
        .order_by(PaymentGatewayConfig.sort_order.asc(), PaymentGatewayConfig.created_at.asc())
    ).scalars().all()
    for config in configs:
        if normalize_provider_code(config.provider) not in _PROVIDER_FACTORIES:
            continue
        if _accepts(config, payment_method=method, amount=total, currency=normalized_currency) is None:
            log_event(
                logger,
                "gateway.resolved",
                tenant_id=tenant_id,
                provider=config.provider,
                payment_method=method,
            )
            return ResolvedGateway(config=config, provider=provider_for_config(config))

    raise GatewayNotConfigured(
        f"No active payment gateway accepts '{method}' for {total} {normalized_currency}"
    )
