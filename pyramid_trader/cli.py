"""
Pyramid Trader command line.

Usage:
    pyramid-trader run [--stdin] [--dry-run]     # service; optional JSON signals on stdin
    pyramid-trader signal buy SOL [--dry-run]    # process one signal and exit
    pyramid-trader status                        # persisted pyramid state

Configuration comes from the environment (and .env): PYRAMID_STYLE,
HYPERLIQUID_WALLET_ADDRESS, HYPERLIQUID_PRIVATE_KEY, PYRAMID_DB_PATH, ...

Example stdin line:
    {"action": "buy", "symbol": "SOL-PERP", "strategy": "breakout"}
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from .config import (
    PyramidConfig,
    ServiceSettings,
    load_pyramid_config_from_env,
    load_service_settings_from_env,
)
from .engine.pyramid_engine import PyramidEngine
from .engine.types import AccountContext, SignalAction, TradingSignal, normalize_symbol
from .errors import PyramidError
from .exchange.gateway import ExchangeGateway, GatewayConfig, GuardedGateway
from .exchange.hyperliquid import HyperliquidConfig, HyperliquidGateway
from .exchange.mock import MockExchangeGateway
from .persistence.sqlite_store import SQLiteTradeStore
from .risk.monitor import RiskMonitor
from .risk.types import RiskSettings
from .service import PyramidService

logger = logging.getLogger("PyramidTrader")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
        handlers=handlers,
    )
    # Reduce noise
    logging.getLogger('aiohttp').setLevel(logging.WARNING)


def build_gateway(settings: ServiceSettings, dry_run: bool = False) -> GuardedGateway:
    """Exchange gateway wrapped in the timeout/retry/breaker policy."""
    if dry_run:
        inner: ExchangeGateway = MockExchangeGateway()
    else:
        inner = HyperliquidGateway(HyperliquidConfig(
            use_testnet=settings.use_testnet,
            wallet_address=settings.wallet_address,
            private_key=settings.private_key,
            request_timeout=settings.exchange_timeout_seconds,
        ))
    return GuardedGateway(inner, GatewayConfig(timeout_seconds=settings.exchange_timeout_seconds))


def build_engine(
    config: PyramidConfig,
    gateway: GuardedGateway,
    store: Optional[SQLiteTradeStore]
) -> PyramidEngine:
    engine = PyramidEngine(gateway, config, persistence=store)
    engine.add_update_listener(
        lambda u: logger.info(
            f"UPDATE {u.symbol}: level={u.pyramid_level} exits={u.exit_count} "
            f"size={u.current_size:.6f} avg={u.average_entry:.4f} ({u.reason})"
        )
    )
    return engine


async def _read_stdin_signals(service: PyramidService, stop_event: asyncio.Event):
    loop = asyncio.get_running_loop()
    while not stop_event.is_set():
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
            trading_signal = TradingSignal.from_payload(payload)
        except (ValueError, PyramidError) as e:
            logger.warning(f"Bad signal line ignored: {e}")
            continue
        context = AccountContext(account_id=str(payload.get("account_id", "default")))
        future = service.submit(trading_signal, context)
        future.add_done_callback(_log_signal_outcome)


def _log_signal_outcome(future: asyncio.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Signal failed: {error}")
        return
    result = future.result()
    status = "accepted" if result.accepted else "rejected"
    logger.info(f"Signal {result.action.value} {result.symbol} {status}: {result.reason}")


async def run_service(args) -> int:
    config = load_pyramid_config_from_env()
    settings = load_service_settings_from_env()
    if args.db:
        settings.db_path = args.db
    if args.testnet:
        settings.use_testnet = True

    if not args.dry_run and not settings.private_key:
        logger.error("HYPERLIQUID_PRIVATE_KEY is required (or use --dry-run)")
        return 2

    gateway = build_gateway(settings, dry_run=args.dry_run)
    store = SQLiteTradeStore(settings.db_path)
    engine = build_engine(config, gateway, store)
    monitor = RiskMonitor(
        engine,
        gateway,
        settings=RiskSettings(check_interval_seconds=settings.risk_interval_seconds),
    )
    service = PyramidService(engine, gateway, risk_monitor=monitor, store=store, settings=settings)

    logger.info('=' * 60)
    logger.info(f"PYRAMID TRADER ({config.preset.value}, {'DRY RUN' if args.dry_run else 'LIVE'})")
    logger.info(f"Margins: {list(config.margin_percentages)}  Exits: {list(config.exit_percentages)}")
    logger.info(f"Leverage: {config.fixed_leverage}x ({config.leverage_mode.value})  "
                f"Max exposure: {config.max_account_exposure * 100:.0f}%")
    logger.info('=' * 60)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await service.start()
    reader = None
    if args.stdin:
        reader = asyncio.create_task(_read_stdin_signals(service, stop_event))

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutdown requested...")
        if reader is not None:
            reader.cancel()
        await service.stop()
    return 0


async def run_single_signal(args) -> int:
    config = load_pyramid_config_from_env()
    settings = load_service_settings_from_env()
    if args.testnet:
        settings.use_testnet = True

    gateway = build_gateway(settings, dry_run=args.dry_run)
    store = None if args.dry_run else SQLiteTradeStore(settings.db_path)
    engine = build_engine(config, gateway, store)

    trading_signal = TradingSignal(
        action=SignalAction(args.action),
        symbol=normalize_symbol(args.symbol),
        strategy="cli",
    )
    try:
        restored = store.load_positions() if store is not None else {}
        await engine.load_existing_positions(restored)
        result = await engine.process_signal(trading_signal)
        print(json.dumps({
            'accepted': result.accepted,
            'action': result.action.value,
            'symbol': result.symbol,
            'reason': result.reason,
            'order_size': result.order_size,
            'order_price': result.order_price,
        }, indent=2))
        return 0 if result.accepted else 1
    except PyramidError as e:
        logger.error(f"Signal failed: {e}")
        return 1
    finally:
        await gateway.close()
        if store is not None:
            store.close()


def show_status(args) -> int:
    settings = load_service_settings_from_env()
    store = SQLiteTradeStore(args.db or settings.db_path, start_thread=False)
    try:
        states = store.load_positions()
        if not states:
            print("No active pyramid positions")
        for symbol, state in sorted(states.items()):
            print(
                f"{symbol}: {state.phase} {state.direction.value} exits={state.exit_count} "
                f"size={state.current_size} avg={state.average_entry_price:.4f} "
                f"margin=${state.total_margin_used:.2f}"
            )
        for trade in store.get_trades(limit=args.trades):
            print(
                f"  {trade['symbol']} {trade['side']} {trade['size']} @ {trade['price']} "
                f"({trade['reason']}, level {trade['pyramid_level']})"
            )
    finally:
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pyramid-trader", description="Pyramid position engine")
    parser.add_argument('--log-level', default='INFO', help='Logging level')
    parser.add_argument('--log-file', default=None, help='Also log to this file')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run the service')
    run.add_argument('--stdin', action='store_true', help='Read JSON signals from stdin')
    run.add_argument('--dry-run', action='store_true', help='Use the in-memory mock exchange')
    run.add_argument('--testnet', action='store_true', help='Use Hyperliquid testnet')
    run.add_argument('--db', default=None, help='SQLite path (default PYRAMID_DB_PATH)')

    one = sub.add_parser('signal', help='Process one signal and exit')
    one.add_argument('action', choices=[a.value for a in SignalAction])
    one.add_argument('symbol')
    one.add_argument('--dry-run', action='store_true', help='Use the in-memory mock exchange')
    one.add_argument('--testnet', action='store_true', help='Use Hyperliquid testnet')

    status = sub.add_parser('status', help='Show persisted pyramid state')
    status.add_argument('--db', default=None, help='SQLite path (default PYRAMID_DB_PATH)')
    status.add_argument('--trades', type=int, default=10, help='Recent trades to show')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        if args.command == 'run':
            return asyncio.run(run_service(args))
        if args.command == 'signal':
            return asyncio.run(run_single_signal(args))
        return show_status(args)
    except PyramidError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
