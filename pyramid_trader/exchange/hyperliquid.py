"""
Hyperliquid Gateway.

ExchangeGateway implementation for Hyperliquid perps.

Read endpoints (POST /info over aiohttp):
- clearinghouseState: account value and positions
- allMids: mid prices
- meta: asset universe (index, szDecimals, maxLeverage), cached with TTL

Orders go through the hyperliquid-python-sdk Exchange client, which signs
the L1 action. The SDK is synchronous, so calls run in the default executor.

Every order is IOC: limit orders at their given price, market orders at
mid +/- slippage rounded to tick. Anything that does not fill immediately
is reported as a failure.
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from functools import partial
from threading import Lock
from typing import Any, Dict, List, Optional

import aiohttp
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.utils import constants
from hyperliquid.utils.error import Error as SDKError

from ..errors import ExchangeError
from .gateway import ExchangeGateway
from .types import AssetInfo, ExchangePosition, OrderRequest, OrderResult, OrderType

IOC = {"limit": {"tif": "Ioc"}}

# Perps only; keeps the SDK from fetching spot metadata on construction
EMPTY_SPOT_META = {"universe": [], "tokens": []}


@dataclass
class HyperliquidConfig:
    """Connection settings for Hyperliquid."""
    api_url: str = constants.MAINNET_API_URL
    testnet_api_url: str = constants.TESTNET_API_URL
    use_testnet: bool = False
    wallet_address: Optional[str] = None
    private_key: Optional[str] = None
    vault_address: Optional[str] = None
    request_timeout: float = 10.0
    meta_cache_ttl_seconds: float = 3600.0
    market_slippage: float = 0.05  # IOC price band for market orders


class HyperliquidGateway(ExchangeGateway):
    """Talks to Hyperliquid perps for a single wallet."""

    def __init__(
        self,
        config: HyperliquidConfig = None,
        logger: logging.Logger = None,
        exchange: Exchange = None
    ):
        self._config = config or HyperliquidConfig()
        self._logger = logger or logging.getLogger(__name__)

        self._api_url = (
            self._config.testnet_api_url
            if self._config.use_testnet
            else self._config.api_url
        )

        self._wallet = None
        if self._config.private_key:
            self._wallet = Account.from_key(self._config.private_key)

        # Address whose account state is queried
        self._address = self._config.wallet_address or (
            self._wallet.address if self._wallet else None
        )

        self._session: Optional[aiohttp.ClientSession] = None

        # SDK order client, built on first order once metadata is loaded
        self._exchange = exchange

        # Asset metadata cache
        self._assets: Dict[str, AssetInfo] = {}
        self._meta: Optional[Dict[str, Any]] = None
        self._last_meta_fetch: float = 0
        self._meta_lock = Lock()

    @property
    def is_mainnet(self) -> bool:
        return not self._config.use_testnet

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout)
            )
        return self._session

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        session = await self._get_session()
        async with session.post(
            f"{self._api_url}{path}",
            json=payload,
            headers={"Content-Type": "application/json"}
        ) as response:
            response.raise_for_status()
            return await response.json()

    async def _info(self, payload: Dict[str, Any]) -> Any:
        return await self._post("/info", payload)

    def _require_address(self) -> str:
        if not self._address:
            raise ExchangeError("No wallet address configured", operation="info")
        return self._address

    async def _clearinghouse_state(self) -> Dict[str, Any]:
        return await self._info({
            "type": "clearinghouseState",
            "user": self._require_address()
        })

    async def get_account_value(self) -> float:
        data = await self._clearinghouse_state()
        summary = data.get("marginSummary") or data.get("crossMarginSummary") or {}
        return float(summary.get("accountValue", 0))

    async def get_positions(self) -> List[ExchangePosition]:
        data = await self._clearinghouse_state()
        positions = []
        for asset in data.get("assetPositions", []):
            pos = asset.get("position", {})
            coin = pos.get("coin", "")
            szi = float(pos.get("szi", 0))
            if coin and szi != 0:
                positions.append(ExchangePosition(
                    symbol=coin,
                    size=szi,
                    entry_price=float(pos.get("entryPx") or 0),
                ))
        return positions

    async def get_market_price(self, symbol: str) -> float:
        mids = await self._info({"type": "allMids"})
        if symbol not in mids:
            raise ExchangeError(f"No mid price for {symbol}", operation="allMids")
        return float(mids[symbol])

    def _is_meta_fresh(self) -> bool:
        return bool(self._assets) and (
            time.time() - self._last_meta_fetch < self._config.meta_cache_ttl_seconds
        )

    async def _refresh_meta(self):
        data = await self._info({"type": "meta"})
        universe = data.get("universe", [])
        if not universe:
            raise ExchangeError("Empty universe in metadata response", operation="meta")

        assets = {}
        for idx, entry in enumerate(universe):
            if entry.get("name"):
                info = AssetInfo.from_meta(idx, entry)
                assets[info.name] = info

        with self._meta_lock:
            self._assets = assets
            self._meta = data
            self._last_meta_fetch = time.time()
        self._logger.info(f"Loaded metadata for {len(assets)} assets")

    async def get_asset_info(self, symbol: str) -> AssetInfo:
        if not self._is_meta_fresh():
            try:
                await self._refresh_meta()
            except (aiohttp.ClientError, ExchangeError) as e:
                if not self._assets:
                    raise
                self._logger.warning(f"Metadata refresh failed, using cached data: {e}")
        with self._meta_lock:
            info = self._assets.get(symbol)
        if info is None:
            raise ExchangeError(f"Unknown asset {symbol}", operation="meta")
        return info

    def _get_exchange(self) -> Exchange:
        if self._exchange is None:
            self._exchange = Exchange(
                self._wallet,
                base_url=self._api_url,
                meta=self._meta,
                vault_address=self._config.vault_address,
                account_address=self._config.wallet_address,
                spot_meta=EMPTY_SPOT_META,
                timeout=self._config.request_timeout,
            )
            self._logger.info(
                f"Order client initialized on {'mainnet' if self.is_mainnet else 'testnet'}"
            )
        return self._exchange

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if self._wallet is None:
            raise ExchangeError("No private key configured", operation="order")

        asset = await self.get_asset_info(request.symbol)

        if request.order_type == OrderType.LIMIT:
            if request.limit_price is None:
                return OrderResult.failure("Limit order requires limit_price")
            price = request.limit_price
        else:
            mid = await self.get_market_price(request.symbol)
            band = 1 + self._config.market_slippage if request.is_buy else 1 - self._config.market_slippage
            price = asset.round_price(mid * band)

        self._logger.info(
            f"Submitting {request.order_type.value} {request.side} {request.size} "
            f"{request.symbol} @ {price} reduce_only={request.reduce_only}"
        )
        exchange = self._get_exchange()
        submit = partial(
            exchange.order,
            request.symbol,
            request.is_buy,
            request.size,
            price,
            IOC,
            reduce_only=request.reduce_only,
        )
        try:
            data = await asyncio.get_event_loop().run_in_executor(None, submit)
        except SDKError as e:
            raise ExchangeError(f"Order request failed: {e}", operation="order") from e
        return self._parse_order_response(data)

    def _parse_order_response(self, data: Dict[str, Any]) -> OrderResult:
        """Only an immediate fill confirms an order."""
        if data.get("status") != "ok":
            return OrderResult.failure(str(data.get("response", data)), raw_response=data)

        statuses = (
            data.get("response", {}).get("data", {}).get("statuses", [])
        )
        if not statuses:
            return OrderResult.failure("Empty order status", raw_response=data)

        status = statuses[0]
        if "error" in status:
            return OrderResult.failure(status["error"], raw_response=data)
        if "filled" in status:
            filled = status["filled"]
            total = float(filled.get("totalSz", 0))
            if total <= 0:
                return OrderResult.failure("Order reported no filled size", raw_response=data)
            return OrderResult.success(
                order_id=str(filled.get("oid")),
                filled_size=total,
                average_price=float(filled.get("avgPx", 0)) or None,
                raw_response=data,
            )
        if "resting" in status:
            return OrderResult.failure(
                f"Order resting unfilled (oid {status['resting'].get('oid')})",
                order_id=str(status["resting"].get("oid")),
                raw_response=data,
            )
        return OrderResult.failure(f"Unrecognized order status: {status}", raw_response=data)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
