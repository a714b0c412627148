from __future__ import annotations

from loguru import logger

from data.store import BaseStore, create_store
from dca.scheduler import StrategyScheduler, WeekendBoost
from engine.coordinator import ExecutionCoordinator
from engine.ledger import PositionLedger
from engine.state import EngineStateStore
from risk.manager import RiskManager
from services.config_service import ConfigService, Settings
from services.crypto import CredentialVault, build_fernet
from services.gateways import GatewayFactory, GatewayRegistry, build_gateway_factory
from services.notifier import Notifier, Sender, WebhookSender, log_sender
from services.orchestrator import DcaOrchestrator
from services.scheduler import timeframe_delta
from services.signal_service import SignalService
from strategies.vote import IndicatorVoteStrategy


class AppContext:
    """Every process-lifetime collaborator, wired once and torn down together."""

    def __init__(
        self,
        settings: Settings,
        store: BaseStore | None = None,
        gateway_factory: GatewayFactory | None = None,
        sender: Sender | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_store(settings.DATABASE_URL or None, settings.DATABASE_PATH)
        self.config_service = ConfigService(self.store, settings)
        self.vault = CredentialVault(self.store, build_fernet(settings.CREDENTIAL_ENCRYPTION_KEY))
        self.gateways = GatewayRegistry(
            gateway_factory or build_gateway_factory(settings),
            self.config_service,
            self.vault,
            default_name=settings.GATEWAY,
        )
        if sender is None:
            sender = WebhookSender(settings.NOTIFY_WEBHOOK_URL) if settings.NOTIFY_WEBHOOK_URL else log_sender
        self.notifier = Notifier(sender)
        self.state_store = EngineStateStore(self.store)
        self.risk = RiskManager(settings.MAX_SLIPPAGE_CAP_BPS)
        self.ledger = PositionLedger(self.store)
        self.scheduler = StrategyScheduler(
            self.store,
            WeekendBoost(settings.WEEKEND_BOOST_MULTIPLIER, settings.weekend_boost_days()),
            indicator_lookup=self.store.get_indicator_set,
        )
        validity = timeframe_delta(settings.SIGNAL_INTERVAL) * settings.SIGNAL_VALIDITY_INTERVALS
        self.signals = SignalService(
            self.store,
            self.gateways,
            IndicatorVoteStrategy(validity),
            interval=settings.SIGNAL_INTERVAL,
            candle_limit=settings.SIGNAL_CANDLE_LIMIT,
        )
        self.coordinator = ExecutionCoordinator(
            self.store,
            self.scheduler,
            self.ledger,
            self.gateways,
            self.risk,
            self.config_service,
            self.notifier,
        )
        self.orchestrator = DcaOrchestrator(
            self.store,
            self.scheduler,
            self.coordinator,
            self.ledger,
            self.signals,
            self.gateways,
            self.risk,
            self.config_service,
            self.state_store,
            tick_seconds=settings.TICK_SECONDS,
            max_parallel=settings.MAX_PARALLEL_EXECUTIONS,
        )

    async def start(self) -> "AppContext":
        await self.notifier.start()
        logger.info("Context started (gateway={}, store={})", self.settings.GATEWAY, type(self.store).__name__)
        return self

    async def close(self) -> None:
        self.orchestrator.stop()
        await self.notifier.stop()
        await self.gateways.close()
        logger.info("Context closed")

    async def __aenter__(self) -> "AppContext":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
