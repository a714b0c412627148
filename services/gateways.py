from __future__ import annotations

from typing import Callable

from loguru import logger

from adapters.base import OrderGateway
from adapters.binance_spot import BinanceSpotGateway
from adapters.http_gateway import HttpGateway
from adapters.paper import PaperGateway
from adapters.retry import GuardedGateway, RetryPolicy
from services.config_service import ConfigService, Settings
from services.crypto import CredentialVault


GatewayFactory = Callable[[str, dict[str, str] | None], OrderGateway]


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        backoff_min_seconds=settings.RETRY_BACKOFF_MIN_SECONDS,
        backoff_max_seconds=settings.RETRY_BACKOFF_MAX_SECONDS,
        multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
    )


def build_gateway_factory(settings: Settings) -> GatewayFactory:
    policy = retry_policy_from_settings(settings)

    def factory(name: str, credentials: dict[str, str] | None) -> OrderGateway:
        if name == "binance":
            creds = credentials or {"api_key": settings.BINANCE_API_KEY, "api_secret": settings.BINANCE_API_SECRET}
            inner: OrderGateway = BinanceSpotGateway(
                creds.get("api_key", ""),
                creds.get("api_secret", ""),
                quote_asset=settings.QUOTE_ASSET,
            )
        elif name == "http":
            if not settings.GATEWAY_URL:
                raise ValueError("GATEWAY_URL is required for the http gateway")
            inner = HttpGateway(settings.GATEWAY_URL, timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        elif name == "paper":
            data_provider = BinanceSpotGateway("", "", quote_asset=settings.QUOTE_ASSET)
            inner = PaperGateway(data_provider, settings.PAPER_SLIPPAGE_BPS, settings.PAPER_FEE_BPS)
        else:
            raise ValueError(f"Unknown gateway: {name}")
        return GuardedGateway(inner, policy, settings.GATEWAY_TIMEOUT_SECONDS)

    return factory


class GatewayRegistry:
    """One gateway per (venue, owner with own credentials); owners without credentials share the process gateway."""

    def __init__(
        self,
        factory: GatewayFactory,
        config_service: ConfigService,
        vault: CredentialVault,
        default_name: str = "paper",
    ) -> None:
        self.factory = factory
        self.config_service = config_service
        self.vault = vault
        self.default_name = default_name
        self._gateways: dict[tuple[str, str | None], OrderGateway] = {}

    def _get(self, name: str, owner: str | None, credentials: dict[str, str] | None) -> OrderGateway:
        key = (name, owner)
        gateway = self._gateways.get(key)
        if gateway is None:
            gateway = self.factory(name, credentials)
            self._gateways[key] = gateway
            logger.info("Gateway {} ready for {}", name, owner or "process")
        return gateway

    def default(self) -> OrderGateway:
        return self._get(self.default_name, None, None)

    def for_owner(self, owner: str) -> OrderGateway:
        name = self.config_service.load(owner).gateway
        credentials = self.vault.load(owner, name)
        if credentials is None:
            return self._get(name, None, None)
        return self._get(name, owner, credentials)

    async def store_credentials(self, owner: str, gateway: str, credentials: dict[str, str]) -> None:
        self.vault.save(owner, gateway, credentials)
        stale = self._gateways.pop((gateway, owner), None)
        if stale is not None:
            await stale.close()

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()
        self._gateways.clear()
