"""Brand (tenant) -> payment gateway lookup.

Each brand may run its own Stripe account. Core operations receive a
GatewayRegistry and ask it for the gateway of the record's brand instead
of reading keys themselves.
"""

from __future__ import annotations

from collections.abc import Callable

from touroffice.config import Settings, get_settings
from touroffice.domain.errors import GatewayConfigurationError
from touroffice.gateway.client import PaymentGateway, StripeGateway

DEFAULT_BRAND = "default"


class GatewayRegistry:
    """Resolve and cache one gateway instance per brand.

    Brands without a dedicated key fall back to the default key.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        factory: Callable[[str | None, int], PaymentGateway] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._factory = factory or (
            lambda key, timeout: StripeGateway(key, timeout_seconds=timeout)
        )
        self._gateways: dict[str, PaymentGateway] = {}

    def _key_for(self, brand: str) -> str | None:
        return (
            self._settings.stripe_brand_keys.get(brand)
            or self._settings.stripe_default_key
        )

    def for_brand(self, brand: str | None) -> PaymentGateway:
        """Gateway for ``brand`` (None/"" means the default brand).

        Raises:
            GatewayConfigurationError: If no key exists for the brand nor a default.
        """
        slug = (brand or DEFAULT_BRAND).lower()
        gateway = self._gateways.get(slug)
        if gateway is None:
            key = self._key_for(slug)
            if not key:
                raise GatewayConfigurationError(
                    f"No payment gateway configured for brand '{slug}'"
                )
            gateway = self._factory(key, self._settings.gateway_timeout_seconds)
            self._gateways[slug] = gateway
        return gateway

    def register(self, brand: str | None, gateway: PaymentGateway) -> None:
        """Install a gateway instance explicitly (tests, custom adapters)."""
        self._gateways[(brand or DEFAULT_BRAND).lower()] = gateway
