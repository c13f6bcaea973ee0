"""
Integration tests for the orchestrator lifecycle.

Every real component is wired around one bus; only the exchange gateway is
mocked.
"""

import pytest
import pytest_asyncio

from perp_mm.config.loader import merge_config
from perp_mm.core.errors import ConfigError, RequestError, StartupError
from perp_mm.core.events import EventType
from perp_mm.orchestrator import Orchestrator
from perp_mm.security.signer import LocalSigner

from conftest import WALLET, wait_until


@pytest_asyncio.fixture
async def orchestrator(config, signer, gateway, bus, clock, rng):
    orch = Orchestrator(config, signer, gateway=gateway, bus=bus, clock=clock, rng=rng)
    yield orch
    await orch.stop()


class TestLifecycle:
    """Tests for start() and stop()."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator, gateway, clock):
        assert await orchestrator.start()

        gateway.initialize.assert_awaited_once()
        assert orchestrator.running
        assert orchestrator.start_time == clock.now
        for component in (orchestrator.security, orchestrator.risk, orchestrator.ledger,
                          orchestrator.market_maker, orchestrator.optimizer):
            assert component.running

        health = await orchestrator.health_check()
        assert health["healthy"]
        assert health["active_connection"] == 0

        await orchestrator.stop()

        assert not orchestrator.running
        assert not orchestrator.market_maker.running
        assert not orchestrator.security.running
        gateway.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator, gateway):
        assert await orchestrator.start()
        assert await orchestrator.start()
        gateway.initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_signer_not_ready(self, config, gateway, bus, clock, rng):
        signer = LocalSigner(WALLET, ready=False)
        orch = Orchestrator(config, signer, gateway=gateway, bus=bus, clock=clock, rng=rng)

        assert not await orch.start()

        assert not orch.running
        gateway.initialize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_startup_failure(self, orchestrator, gateway):
        gateway.initialize.side_effect = StartupError("connect timeout")

        assert not await orchestrator.start()

        assert not orchestrator.running
        gateway.close.assert_awaited_once()
        assert not orchestrator.security.running

    @pytest.mark.asyncio
    async def test_component_failure_tears_down(self, orchestrator, gateway):
        """Risk cannot load positions; the already started security gate is stopped again."""
        gateway.get_positions.side_effect = RequestError("unavailable", status=503)

        assert not await orchestrator.start()

        assert not orchestrator.running
        assert not orchestrator.security.running
        assert orchestrator.market_maker is not None
        assert not orchestrator.market_maker.running
        gateway.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_payload_tears_down(self, orchestrator, gateway):
        """An untyped error from a component still leaves nothing running."""
        gateway.get_positions.side_effect = KeyError("size")

        assert not await orchestrator.start()

        assert not orchestrator.running
        assert not orchestrator.security.running
        assert not orchestrator.risk.running
        gateway.close.assert_awaited_once()

        gateway.get_positions.side_effect = None
        assert await orchestrator.start()

    @pytest.mark.asyncio
    async def test_optional_components_disabled(self, config, signer, gateway, bus, clock, rng):
        config = merge_config(config, {
            "market_making": {"enabled": False},
            "optimization": {"enabled": False},
        })
        orch = Orchestrator(config, signer, gateway=gateway, bus=bus, clock=clock, rng=rng)

        assert await orch.start()
        health = await orch.health_check()
        await orch.stop()

        assert orch.market_maker is None
        assert orch.optimizer is None
        assert set(health["components"]) == {"gateway", "security", "risk", "ledger"}
        gateway.subscribe.assert_not_awaited()


class TestConfigUpdates:
    """Tests for configuration replacement."""

    @pytest.mark.asyncio
    async def test_update_restarts_running_agent(self, orchestrator, gateway):
        await orchestrator.start()
        first_maker = orchestrator.market_maker

        new_config = await orchestrator.update_config({"risk": {"stop_loss": {"percentage": 3.0}}})

        assert orchestrator.config is new_config
        assert new_config.risk.stop_loss.percentage == 3.0
        assert orchestrator.running
        assert orchestrator.market_maker is not first_maker
        assert orchestrator.risk.config.stop_loss.percentage == 3.0
        assert gateway.initialize.await_count == 2

    @pytest.mark.asyncio
    async def test_update_while_stopped(self, orchestrator, gateway):
        await orchestrator.update_config({"health_check_interval_s": 5.0})

        assert orchestrator.config.health_check_interval_s == 5.0
        assert not orchestrator.running
        gateway.initialize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self, orchestrator):
        await orchestrator.start()
        before = orchestrator.config

        with pytest.raises(ConfigError):
            await orchestrator.update_config({"risk": {"stop_loss": {"percentage": 500.0}}})

        assert orchestrator.config is before
        assert orchestrator.running

    @pytest.mark.asyncio
    async def test_config_update_event_applied(self, orchestrator, bus):
        await orchestrator.start()
        updated = merge_config(orchestrator.config, {"risk": {"take_profit": {"percentage": 8.0}}})

        bus.emit(EventType.CONFIG_UPDATE, {"config": updated}, source="optimizer")
        await wait_until(lambda: orchestrator.config.risk.take_profit.percentage == 8.0)
        await wait_until(lambda: orchestrator.running)

        assert orchestrator.risk.config.take_profit.percentage == 8.0

    @pytest.mark.asyncio
    async def test_config_update_event_without_config(self, orchestrator, bus):
        await orchestrator.start()
        before = orchestrator.config

        bus.emit(EventType.CONFIG_UPDATE, {"parameters": {}}, source="optimizer")
        await bus.join()

        assert orchestrator.config is before


class TestStatus:
    """Tests for the status and authorization surface."""

    @pytest.mark.asyncio
    async def test_status(self, orchestrator):
        await orchestrator.start()

        status = orchestrator.get_status()

        assert status["running"]
        assert status["wallet"] == {"address": WALLET, "is_ready": True}
        assert status["components"]["gateway"] == {"initialized": True, "active_connection": 0}
        assert status["components"]["security"]["running"]
        assert "subscribers" in status["event_bus"]
        assert orchestrator.get_config()["wallet_address"] == WALLET

    @pytest.mark.asyncio
    async def test_status_before_start(self, orchestrator):
        status = orchestrator.get_status()

        assert not status["running"]
        assert status["start_time"] is None
        assert status["components"]["security"] is None
        assert orchestrator.get_performance_metrics() == {}
        assert orchestrator.get_pending_transactions() == []

    @pytest.mark.asyncio
    async def test_audit_log(self, orchestrator):
        await orchestrator.start()

        log = orchestrator.get_audit_log()

        assert log["entries"][0]["action"] == "security_gate_started"
        assert log["verification"]["valid"]

    @pytest.mark.asyncio
    async def test_audit_log_requires_security(self, orchestrator):
        with pytest.raises(StartupError):
            orchestrator.get_audit_log()
