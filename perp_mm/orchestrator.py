"""
Agent orchestrator.

Builds and wires every component around one event bus, and owns:
- sequenced start (security, risk, ledger, quoting, optimizer) and reverse stop
- the periodic health check
- configuration replacement, which restarts the whole system when running

The caller constructs one Orchestrator and holds it; there is no global
instance.
"""

import asyncio
import random
from typing import Any, Callable, Optional

import structlog

from perp_mm.analytics.ledger import PerformanceLedger
from perp_mm.config.loader import config_to_dict, merge_config
from perp_mm.config.schema import BotConfig
from perp_mm.core.errors import ConfigError, GatewayError, StartupError
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import now_ms, utc_iso
from perp_mm.core.periodic import PeriodicTask
from perp_mm.gateway.exchange import ExchangeGateway
from perp_mm.optimizer.optimizer import Optimizer
from perp_mm.quoting.market_maker import MarketMaker
from perp_mm.risk.engine import RiskEngine
from perp_mm.security.gate import SecurityGate
from perp_mm.security.signer import Signer

logger = structlog.get_logger(__name__)


class Orchestrator:
    """
    Lifecycle owner for the market-making agent.

    Design principles:
    - start() either brings everything up or leaves nothing running
    - Config is replaced wholesale through the validated merge, never patched
    - Optimizer updates go through the same path as operator updates
    """

    def __init__(
        self,
        config: BotConfig,
        signer: Signer,
        gateway: Optional[Any] = None,
        bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Validated bot configuration
            signer: Wallet signing capability
            gateway: Exchange gateway; a fresh ExchangeGateway is built on each start when omitted
            bus: Event bus shared by every component
            rng: Random source handed to components
            clock: Wall clock in epoch milliseconds
        """
        self.config = config
        self.signer = signer
        self.bus = bus or EventBus()
        self.rng = rng or random.Random()
        self._clock = clock
        self._injected_gateway = gateway
        self.gateway: Optional[Any] = gateway

        self.security: Optional[SecurityGate] = None
        self.risk: Optional[RiskEngine] = None
        self.ledger: Optional[PerformanceLedger] = None
        self.market_maker: Optional[MarketMaker] = None
        self.optimizer: Optional[Optimizer] = None

        self.running = False
        self.start_time: Optional[int] = None
        self.last_health: dict = {}
        self._started: list[Any] = []
        self._gateway_open = False
        self._lifecycle_lock = asyncio.Lock()
        self._config_subscription: Optional[Subscription] = None
        self._health = PeriodicTask(
            "health-check", config.health_check_interval_s, self.health_check
        )

        logger.info(
            "orchestrator_initialized",
            wallet=signer.address,
            pairs=list(config.market_making.pairs),
            market_making=config.market_making.enabled,
            optimization=config.optimization.enabled,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _build_components(self) -> None:
        config = self.config
        if self._injected_gateway is None:
            self.gateway = ExchangeGateway(config.api, self.bus)
        self.security = SecurityGate(config.security, self.signer, self.bus, clock=self._clock, rng=self.rng)
        self.risk = RiskEngine(config.risk, self.gateway, self.bus, clock=self._clock)
        self.ledger = PerformanceLedger(self.bus)
        self.market_maker = None
        self.optimizer = None
        if config.market_making.enabled:
            self.market_maker = MarketMaker(
                config.market_making,
                self.gateway,
                self.bus,
                self.security,
                risk=self.risk,
                clock=self._clock,
                rng=self.rng,
            )
        if config.optimization.enabled:
            self.optimizer = Optimizer(config, self.bus, self.ledger, clock=self._clock, rng=self.rng)

    def _start_sequence(self) -> list[Any]:
        return [c for c in (self.security, self.risk, self.ledger, self.market_maker, self.optimizer) if c]

    async def start(self) -> bool:
        """
        Bring the agent up.

        Returns:
            True when every component started, False otherwise (nothing left running)
        """
        async with self._lifecycle_lock:
            return await self._start()

    async def _start(self) -> bool:
        if self.running:
            return True
        if self._config_subscription is None:
            self._config_subscription = self.bus.subscribe(
                EventType.CONFIG_UPDATE, self._on_config_update, name="orchestrator.config"
            )

        logger.info("orchestrator_starting")
        try:
            if not self.signer.is_ready:
                raise StartupError("wallet signer is not ready")
            self._build_components()
            self._gateway_open = True
            await self.gateway.initialize()
            for component in self._start_sequence():
                await component.start()
                self._started.append(component)
        except (StartupError, GatewayError, ConfigError) as e:
            logger.error("orchestrator_start_failed", error=str(e), error_type=type(e).__name__)
            await self._teardown()
            return False
        except Exception as e:
            # Malformed exchange payloads surface as untyped errors; nothing may stay half-started.
            logger.error(
                "orchestrator_start_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._teardown()
            return False

        self._health.start()
        self.running = True
        self.start_time = self._clock()
        logger.info(
            "orchestrator_started",
            components=[type(c).__name__ for c in self._started],
        )
        return True

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            await self._stop()

    async def _stop(self) -> None:
        if not self.running:
            return
        logger.info("orchestrator_stopping")
        await self._health.stop()
        await self._teardown()
        self.running = False
        logger.info("orchestrator_stopped", uptime_ms=self._uptime_ms())
        self.start_time = None

    async def _teardown(self) -> None:
        """Stop started components in reverse, then close the gateway."""
        while self._started:
            component = self._started.pop()
            try:
                await component.stop()
            except GatewayError as e:
                logger.error("component_stop_failed", component=type(component).__name__, error=str(e))
        if self._gateway_open and self.gateway is not None:
            await self.gateway.close()
            self._gateway_open = False

    async def close(self) -> None:
        """Stop, release the config listener and drain the bus."""
        await self.stop()
        if self._config_subscription is not None:
            self.bus.unsubscribe(self._config_subscription)
            self._config_subscription = None
        await self.bus.close()

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    async def update_config(self, updates: Any) -> BotConfig:
        """
        Replace the configuration.

        Args:
            updates: Partial mapping of top-level sections, or a full BotConfig

        Returns:
            The new active configuration

        Raises:
            ConfigError: Update rejected; the previous configuration stays active
        """
        async with self._lifecycle_lock:
            new_config = merge_config(self.config, updates)
            was_running = self.running
            if was_running:
                await self._stop()
            self.config = new_config
            self._health.interval_s = new_config.health_check_interval_s
            logger.info("config_updated", restarted=was_running)
            if was_running and not await self._start():
                logger.error("restart_after_config_update_failed")
            return new_config

    async def _on_config_update(self, event: Event) -> None:
        config = event.data.get("config") if isinstance(event.data, dict) else None
        if config is None:
            logger.warning("config_update_without_config", source=event.source)
            return
        try:
            await self.update_config(config)
        except ConfigError as e:
            logger.error("optimizer_config_rejected", error=str(e))

    # =========================================================================
    # STATUS
    # =========================================================================

    def _uptime_ms(self) -> int:
        return self._clock() - self.start_time if self.start_time else 0

    async def health_check(self) -> dict:
        """Component liveness snapshot."""
        components = {
            "gateway": bool(self.gateway is not None and self._gateway_open),
            "security": bool(self.security and self.security.running),
            "risk": bool(self.risk and self.risk.running),
            "ledger": bool(self.ledger and self.ledger.running),
        }
        if self.config.market_making.enabled:
            components["market_maker"] = bool(self.market_maker and self.market_maker.running)
        if self.config.optimization.enabled:
            components["optimizer"] = bool(self.optimizer and self.optimizer.running)

        healthy = self.running and all(components.values())
        self.last_health = {
            "healthy": healthy,
            "checked_at": self._clock(),
            "components": components,
            "wallet_ready": self.signer.is_ready,
            "active_connection": getattr(self.gateway, "active_connection", None),
        }
        if self.running and not healthy:
            logger.warning("health_check_failed", components=components)
        else:
            logger.debug("health_check", healthy=healthy)
        return self.last_health

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "start_time": utc_iso(self.start_time) if self.start_time else None,
            "uptime_s": round(self._uptime_ms() / 1000, 3),
            "wallet": {"address": self.signer.address, "is_ready": self.signer.is_ready},
            "health": self.last_health,
            "components": {
                "gateway": self.gateway.get_state() if self.gateway is not None else None,
                "security": self.security.get_state() if self.security else None,
                "risk": self.risk.get_state() if self.risk else None,
                "ledger": self.ledger.get_state() if self.ledger else None,
                "market_maker": self.market_maker.get_state() if self.market_maker else None,
                "optimizer": self.optimizer.get_state() if self.optimizer else None,
            },
            "event_bus": self.bus.get_stats(),
        }

    def get_performance_metrics(self) -> dict:
        if self.ledger is None:
            return {}
        return self.ledger.get_performance_report()

    def get_config(self) -> dict:
        return config_to_dict(self.config)

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def _require_security(self) -> SecurityGate:
        if self.security is None:
            raise StartupError("security gate is not running")
        return self.security

    async def sign_transaction(self, transaction_id: str, signer: str) -> dict:
        tx = await self._require_security().sign_transaction(transaction_id, signer)
        return tx.to_dict()

    def get_pending_transactions(self) -> list[dict]:
        return self.security.get_pending_transactions() if self.security else []

    def get_audit_log(self, limit: int = 100) -> dict:
        security = self._require_security()
        return {
            "entries": security.get_audit_log(limit),
            "verification": security.verify_audit_log().to_dict(),
        }
