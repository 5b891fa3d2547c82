"""Tests for RiskMonitor.

Stop losses, trailing stops, emergency deleverage and margin alerts
against the mock exchange behind the guarded gateway.
"""

import asyncio

import pytest

from pyramid_trader.config import PyramidConfig
from pyramid_trader.engine.pyramid_engine import PyramidEngine
from pyramid_trader.engine.types import SignalAction, TradingSignal
from pyramid_trader.exchange.gateway import GatewayConfig, GuardedGateway
from pyramid_trader.exchange.mock import MockExchangeGateway
from pyramid_trader.exchange.types import ExchangePosition
from pyramid_trader.risk.monitor import RiskMonitor
from pyramid_trader.risk.types import RiskAction, RiskSettings
from pyramid_trader.sizing.margin_calculator import MarginHealthLevel


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_monitor(settings=None, config=None):
    mock = MockExchangeGateway()
    gateway = GuardedGateway(mock, GatewayConfig(max_read_retries=0, retry_base_delay_ms=1))
    clock = FakeClock()
    engine = PyramidEngine(gateway, config or PyramidConfig(), clock=clock)
    monitor = RiskMonitor(engine, gateway, settings=settings, clock=clock)
    return mock, engine, monitor, clock


class TestStopLoss:
    """Test per-position stop losses."""

    def test_pnl_pct(self):
        long = ExchangePosition("SOL", 5.0, 100.0)
        short = ExchangePosition("SOL", -5.0, 100.0)

        assert RiskMonitor.pnl_pct(long, 90.0) == pytest.approx(-10.0)
        assert RiskMonitor.pnl_pct(short, 90.0) == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self):
        """SOL bought at 100, mark 90: a 10% loss closes it and returns to FLAT."""
        mock, engine, monitor, _ = make_monitor()
        await engine.process_signal(TradingSignal(SignalAction.BUY, "SOL"))
        mock.set_price("SOL", 90.0)

        report = await monitor.run_once()

        event = monitor.get_events()[-1]
        assert report.stop_losses == ["SOL"]
        assert report.errors == []
        assert engine.get_state("SOL") is None
        assert mock.position_size("SOL") == 0.0
        assert event.action == RiskAction.STOP_LOSS
        assert event.executed
        assert event.pnl_pct == pytest.approx(-10.0)

    @pytest.mark.asyncio
    async def test_small_loss_kept(self):
        mock, engine, monitor, _ = make_monitor()
        await engine.process_signal(TradingSignal(SignalAction.BUY, "SOL"))
        mock.set_price("SOL", 90.5)

        closed = await monitor.check_stop_losses()

        assert closed == []
        assert mock.position_size("SOL") == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_short_stop_loss(self):
        mock, engine, monitor, _ = make_monitor()
        mock.set_position("SOL", -5.0, 100.0)
        mock.set_price("SOL", 110.0)

        closed = await monitor.check_stop_losses()

        assert closed == ["SOL"]
        assert mock.position_size("SOL") == 0.0

    @pytest.mark.asyncio
    async def test_unpriced_symbol_skipped(self):
        """A failed price read skips the symbol for this pass only."""
        mock, engine, monitor, _ = make_monitor()
        mock.set_position("SOL", 5.0, 100.0)
        mock.set_price("SOL", 85.0)
        mock.raise_on("get_market_price", count=1)

        assert await monitor.check_stop_losses() == []
        assert await monitor.check_stop_losses() == ["SOL"]


class TestTrailingStop:
    """Test trailing stops."""

    @pytest.mark.asyncio
    async def test_retrace_from_peak_closes(self):
        mock, engine, monitor, _ = make_monitor(RiskSettings(trailing_stop_enabled=True))
        await engine.process_signal(TradingSignal(SignalAction.BUY, "SOL"))

        mock.set_price("SOL", 120.0)
        assert await monitor.check_trailing_stops() == []
        mock.set_price("SOL", 116.0)
        assert await monitor.check_trailing_stops() == []
        mock.set_price("SOL", 113.0)
        closed = await monitor.check_trailing_stops()

        assert closed == ["SOL"]
        assert engine.get_state("SOL") is None
        assert monitor.get_events()[-1].action == RiskAction.TRAILING_STOP

    @pytest.mark.asyncio
    async def test_losing_position_not_trailed(self):
        mock, engine, monitor, _ = make_monitor(RiskSettings(trailing_stop_enabled=True))
        await engine.process_signal(TradingSignal(SignalAction.BUY, "SOL"))

        mock.set_price("SOL", 105.0)
        await monitor.check_trailing_stops()
        mock.set_price("SOL", 95.0)

        assert await monitor.check_trailing_stops() == []
        assert monitor.get_status()['tracked_peaks'] == {"SOL": 105.0}


class TestDeleverage:
    """Test account-level deleverage."""

    @pytest.mark.asyncio
    async def test_exposure_above_multiple_reduces(self):
        """60 SOL at 100 on a $1000 account is 6x: half of it is closed."""
        mock, engine, monitor, _ = make_monitor()
        mock.set_position("SOL", 60.0, 100.0)

        multiple, reduced = await monitor.check_account_exposure()

        state = engine.get_state("SOL")
        assert multiple == pytest.approx(6.0)
        assert reduced == ["SOL"]
        assert mock.position_size("SOL") == pytest.approx(30.0)
        assert state.current_size == pytest.approx(30.0)
        assert state.exit_count == 0
        assert monitor.get_events()[-1].action == RiskAction.DELEVERAGE

    @pytest.mark.asyncio
    async def test_one_lot_position_is_not_liquidated(self):
        """Half of a single lot floors to zero, so the position is left alone."""
        mock, engine, monitor, _ = make_monitor()
        mock.set_account_value(0.1)
        mock.set_position("SOL", 0.01, 100.0)

        multiple, reduced = await monitor.check_account_exposure()

        assert multiple == pytest.approx(10.0)
        assert reduced == []
        assert mock.orders == []
        assert mock.position_size("SOL") == pytest.approx(0.01)
        assert not monitor.get_events()[-1].executed

    @pytest.mark.asyncio
    async def test_exposure_within_multiple(self):
        mock, engine, monitor, _ = make_monitor()
        mock.set_position("SOL", 30.0, 100.0)

        multiple, reduced = await monitor.check_account_exposure()

        assert multiple == pytest.approx(3.0)
        assert reduced == []
        assert mock.orders == []

    @pytest.mark.asyncio
    async def test_deleverage_cooldown(self):
        mock, engine, monitor, clock = make_monitor()
        mock.set_position("SOL", 60.0, 100.0)
        await monitor.check_account_exposure()

        mock.set_position("SOL", 60.0, 100.0)
        _, during = await monitor.check_account_exposure()
        clock.advance(61)
        _, after = await monitor.check_account_exposure()

        assert during == []
        assert after == ["SOL"]


class TestMarginHealth:
    """Test margin alerts."""

    @pytest.mark.asyncio
    async def test_healthy_account_no_alert(self):
        mock, engine, monitor, _ = make_monitor()
        mock.set_position("SOL", 10.0, 100.0)

        assert await monitor.check_margin_health() is None

    @pytest.mark.asyncio
    async def test_warning_alert(self):
        """32.5 SOL at 100 and 5x is $650 margin: 65% usage."""
        alerts = []
        mock, engine, monitor, _ = make_monitor()
        monitor.add_alert_listener(alerts.append)
        mock.set_position("SOL", 32.5, 100.0)

        alert = await monitor.check_margin_health()

        assert alert.level == MarginHealthLevel.WARNING
        assert alert.margin_used == pytest.approx(650.0)
        assert alert.margin_ratio == pytest.approx(0.65)
        assert alerts == [alert]

    @pytest.mark.asyncio
    async def test_critical_alert_survives_listener_error(self):
        def broken(alert):
            raise RuntimeError("pager down")

        mock, engine, monitor, _ = make_monitor()
        monitor.add_alert_listener(broken)
        mock.set_position("SOL", 36.0, 100.0)

        alert = await monitor.check_margin_health()

        assert alert.level == MarginHealthLevel.CRITICAL


class TestScheduling:
    """Test run_once error isolation and the loop."""

    @pytest.mark.asyncio
    async def test_exchange_errors_collected(self):
        mock, engine, monitor, _ = make_monitor()
        mock.raise_on("get_positions", count=3)

        report = await monitor.run_once()

        assert len(report.errors) == 3
        assert report.actions_taken == 0
        assert monitor.get_status()['checks_completed'] == 1

    @pytest.mark.asyncio
    async def test_start_stop(self):
        mock, engine, monitor, _ = make_monitor(RiskSettings(check_interval_seconds=0.01))

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        status = monitor.get_status()
        assert not status['running']
        assert status['checks_completed'] >= 1
