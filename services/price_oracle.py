"""
XRPB price oracle.

Fetches the platform token's USD price from independent sources per chain
(aggregators, DEX listings, and an XRPL-EVM pair reserve ratio combined with
the XRP/USD reference price), and converts USD listing prices into token amounts.

Real charges only ever use a live price: when every source fails the oracle
reports the price as unavailable. The fallback constant is exposed separately
for display estimates.
"""

import aiohttp
import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from web3 import AsyncWeb3

from config import XRPB_CURRENCY, SettlementConfig, get_settlement_config
from models import Chain
from services.circuit_breaker import CircuitBreaker, CircuitOpenError
from utils.chain_detection import parse_chain
from utils.payment_errors import InvalidPriceError, PriceUnavailableError

logger = logging.getLogger(__name__)

GECKOTERMINAL_URL = "https://api.geckoterminal.com/api/v2/networks/solana/tokens/{mint}"
DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex/tokens/{mint}"
ONTHEDEX_URL = "https://api.onthedex.live/public/v1/aggregator"
XRISE33_URL = "https://api.xrise33.com/tokens"
COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

# XRPB/WXRP pair on the XRPL-EVM DEX
XRPL_EVM_PAIR_ADDRESS = "0x8f03556589d2DCA2437661c37759f5959a92493D"
PAIR_ABI = [
    {"name": "getReserves", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "reserve0", "type": "uint112"}, {"name": "reserve1", "type": "uint112"},
                 {"name": "blockTimestampLast", "type": "uint32"}]},
    {"name": "token0", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
    {"name": "token1", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
]

# Hardcoded fallbacks seen in the wild; a source returning one of these is not a live quote
PLACEHOLDER_PRICES = {Decimal("3.10"), Decimal("0.0001")}

# Display-only estimate when every source is down
ESTIMATE_FALLBACK_PRICE = Decimal("0.0001")


@dataclass
class PriceQuote:
    """USD -> XRPB conversion for one chain"""
    chain: str
    usd_amount: Decimal
    price_usd: Decimal
    token_amount: Decimal
    source: str
    is_estimate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "usd_amount": str(self.usd_amount),
            "price_usd": str(self.price_usd),
            "token_amount": str(self.token_amount),
            "source": self.source,
            "is_estimate": self.is_estimate,
        }


def convert_usd_to_token_amount(usd_amount, price) -> Decimal:
    """
    Convert a USD amount into whole platform tokens.

    Rounds up so the buyer's transfer never falls short of the USD price.
    Raises InvalidPriceError when price is missing, non-finite or not positive.
    """
    if price is None:
        raise InvalidPriceError("Invalid XRPB price")
    try:
        price = Decimal(str(price))
        usd_amount = Decimal(str(usd_amount))
    except (InvalidOperation, ValueError):
        raise InvalidPriceError("Invalid XRPB price")
    if not price.is_finite() or price <= 0:
        raise InvalidPriceError("Invalid XRPB price")
    if not usd_amount.is_finite() or usd_amount < 0:
        raise InvalidPriceError(f"Invalid USD amount: {usd_amount}")

    return (usd_amount / price).to_integral_value(rounding=ROUND_CEILING)


def _parse_price(value) -> Optional[Decimal]:
    """Strictly positive, finite, non-placeholder price or None"""
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    if price in PLACEHOLDER_PRICES:
        return None
    return price


class TokenPriceOracle:
    """Ordered multi-source USD price lookup for the platform token"""

    def __init__(self, settlement_config: Optional[SettlementConfig] = None):
        self.settlement_config = settlement_config or get_settlement_config()
        self.source_timeout = self.settlement_config.price_source_timeout
        self.cache_ttl = self.settlement_config.price_cache_ttl
        self._cache: Dict[str, Tuple[Decimal, str, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}

    def _sources(self, chain: Chain) -> List[Tuple[str, Callable[[], Awaitable[Optional[Decimal]]]]]:
        """Ordered price sources for a chain"""
        if chain == Chain.SOLANA:
            return [
                ("geckoterminal", self._geckoterminal_price),
                ("dexscreener", self._dexscreener_price),
            ]
        if chain == Chain.XRPL:
            return [
                ("onthedex", self._onthedex_price),
                ("xrise33", self._xrise33_price),
            ]
        if chain == Chain.XRPL_EVM:
            # Same asset bridged: the XRPL listings back up the pair reserves
            return [
                ("xrplevm_pair", self._evm_pair_price),
                ("xrise33", self._xrise33_price),
                ("onthedex", self._onthedex_price),
                ("coingecko", self._coingecko_xrpb_price),
            ]
        return []

    async def get_token_price_usd(self, chain) -> Optional[Decimal]:
        """USD price for one XRPB on the given chain, or None when unavailable"""
        result = await self.get_token_price_with_source(chain)
        return result[0] if result else None

    async def get_token_price_with_source(self, chain) -> Optional[Tuple[Decimal, str]]:
        chain = parse_chain(chain)

        cached = self._cache.get(chain.value)
        if cached and (time.monotonic() - cached[2]) < self.cache_ttl:
            return cached[0], cached[1]

        lock = self._locks.setdefault(chain.value, asyncio.Lock())
        async with lock:
            cached = self._cache.get(chain.value)
            if cached and (time.monotonic() - cached[2]) < self.cache_ttl:
                return cached[0], cached[1]

            for source_name, source in self._sources(chain):
                breaker = self._breakers.setdefault(
                    source_name, CircuitBreaker(f"price_{source_name}", failure_threshold=3, recovery_timeout=120)
                )
                try:
                    raw_price = await breaker.call(source)
                except CircuitOpenError:
                    logger.debug(f"PRICE_ORACLE: {source_name} skipped (circuit open)")
                    continue
                except asyncio.TimeoutError:
                    logger.warning(f"⚠️ PRICE_ORACLE: {source_name} timed out for {chain.value}")
                    continue
                except Exception as e:
                    logger.warning(f"⚠️ PRICE_ORACLE: {source_name} failed for {chain.value}: {e}")
                    continue

                price = _parse_price(raw_price)
                if price is None:
                    logger.warning(f"⚠️ PRICE_ORACLE: {source_name} returned unusable price {raw_price!r}")
                    continue

                logger.info(f"✅ PRICE_ORACLE: XRPB/{chain.value} = ${price} via {source_name}")
                self._cache[chain.value] = (price, source_name, time.monotonic())
                return price, source_name

        logger.error(f"❌ PRICE_ORACLE: all sources failed for {chain.value}")
        return None

    async def require_price(self, chain) -> Decimal:
        """Live price or PriceUnavailableError"""
        price = await self.get_token_price_usd(chain)
        if price is None:
            raise PriceUnavailableError(f"XRPB price unavailable for {getattr(chain, 'value', chain)}")
        return price

    async def quote(self, chain, usd_amount) -> PriceQuote:
        """Live quote for charging a buyer; raises PriceUnavailableError"""
        chain = parse_chain(chain)
        result = await self.get_token_price_with_source(chain)
        if result is None:
            raise PriceUnavailableError(f"XRPB price unavailable for {chain.value}")
        price, source = result
        usd_amount = Decimal(str(usd_amount))
        return PriceQuote(
            chain=chain.value,
            usd_amount=usd_amount,
            price_usd=price,
            token_amount=convert_usd_to_token_amount(usd_amount, price),
            source=source,
        )

    async def estimate_token_price_usd(self, chain) -> Tuple[Decimal, bool]:
        """Display-only price as (price, is_estimate); the fallback constant is never used for charges"""
        price = await self.get_token_price_usd(chain)
        if price is None:
            return ESTIMATE_FALLBACK_PRICE, True
        return price, False

    async def estimate(self, chain, usd_amount) -> PriceQuote:
        """Display estimate; falls back to a constant and flags it, never used for charges"""
        try:
            return await self.quote(chain, usd_amount)
        except PriceUnavailableError:
            usd_amount = Decimal(str(usd_amount))
            return PriceQuote(
                chain=getattr(chain, "value", chain),
                usd_amount=usd_amount,
                price_usd=ESTIMATE_FALLBACK_PRICE,
                token_amount=convert_usd_to_token_amount(usd_amount, ESTIMATE_FALLBACK_PRICE),
                source="fallback",
                is_estimate=True,
            )

    # ──────────────────────────────────────────────
    # Sources
    # ──────────────────────────────────────────────

    async def _fetch_json(self, method: str, url: str, **kwargs) -> Optional[Any]:
        """JSON request bounded by the per-source timeout; None on non-200"""
        timeout = aiohttp.ClientTimeout(total=self.source_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, **kwargs) as response:
                if response.status == 200:
                    return await response.json(content_type=None)
                if response.status == 429:
                    logger.warning(f"Price source rate-limited: {url}")
                else:
                    logger.warning(f"Price source HTTP {response.status}: {url}")
                return None

    def _solana_mint(self) -> str:
        return self.settlement_config.for_chain(Chain.SOLANA).token_address

    async def _geckoterminal_price(self) -> Optional[Decimal]:
        data = await self._fetch_json("GET", GECKOTERMINAL_URL.format(mint=self._solana_mint()))
        if not data:
            return None
        return _parse_price(data.get("data", {}).get("attributes", {}).get("price_usd"))

    async def _dexscreener_price(self) -> Optional[Decimal]:
        data = await self._fetch_json("GET", DEXSCREENER_URL.format(mint=self._solana_mint()))
        pairs = (data or {}).get("pairs") or []
        if not pairs:
            return None
        return _parse_price(pairs[0].get("priceUsd"))

    async def _onthedex_price(self) -> Optional[Decimal]:
        xrpl = self.settlement_config.for_chain(Chain.XRPL)
        payload = {"tokens": [f"{xrpl.currency}.{xrpl.issuer}"]}
        data = await self._fetch_json("POST", ONTHEDEX_URL, json=payload)
        tokens = (data or {}).get("tokens") or []
        if not tokens:
            return None
        token = tokens[0]
        # Only tokens with a USD market carry price_usd; the top pair bid is then quoted in USD
        if token.get("price_usd") is None:
            return None
        pairs = (token.get("dex") or {}).get("pairs") or []
        if pairs and pairs[0].get("bid") is not None:
            return _parse_price(pairs[0]["bid"])
        return _parse_price(token.get("price_usd"))

    async def _xrise33_price(self) -> Optional[Decimal]:
        """XRiSE33 lists the XRPL-EVM ERC-20; the entry must match symbol and contract address"""
        evm = self.settlement_config.for_chain(Chain.XRPL_EVM)
        data = await self._fetch_json("GET", XRISE33_URL, params={"limit": "1", "page": "10"})
        entries = (data or {}).get("data") or []
        for entry in entries:
            if entry.get("symbol") != XRPB_CURRENCY:
                continue
            if (entry.get("address") or "").lower() != (evm.token_address or "").lower():
                continue
            return _parse_price(entry.get("usdPerToken"))
        return None

    async def _xrp_usd_price(self) -> Optional[Decimal]:
        data = await self._fetch_json(
            "GET", COINGECKO_SIMPLE_PRICE_URL, params={"ids": "ripple", "vs_currencies": "usd"}
        )
        return _parse_price((data or {}).get("ripple", {}).get("usd"))

    async def _coingecko_xrpb_price(self) -> Optional[Decimal]:
        data = await self._fetch_json(
            "GET", COINGECKO_SIMPLE_PRICE_URL, params={"ids": "xrpb", "vs_currencies": "usd"}
        )
        return _parse_price((data or {}).get("xrpb", {}).get("usd"))

    async def _evm_pair_price(self) -> Optional[Decimal]:
        """XRPB price from the XRPB/WXRP pair reserves times XRP/USD"""
        evm = self.settlement_config.for_chain(Chain.XRPL_EVM)
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(evm.rpc_url, request_kwargs={"timeout": self.source_timeout}))
        pair = w3.eth.contract(address=AsyncWeb3.to_checksum_address(XRPL_EVM_PAIR_ADDRESS), abi=PAIR_ABI)

        token0 = await asyncio.wait_for(pair.functions.token0().call(), timeout=self.source_timeout)
        reserve0, reserve1, _ = await asyncio.wait_for(
            pair.functions.getReserves().call(), timeout=self.source_timeout
        )
        if token0.lower() == evm.token_address.lower():
            reserve_xrpb, reserve_xrp = reserve0, reserve1
        else:
            reserve_xrpb, reserve_xrp = reserve1, reserve0
        if not reserve_xrpb:
            return None

        # Both sides carry 18 decimals on XRPL-EVM
        price_in_xrp = Decimal(reserve_xrp) / Decimal(reserve_xrpb)
        xrp_usd = await self._xrp_usd_price()
        if xrp_usd is None:
            return None
        return price_in_xrp * xrp_usd


_price_oracle: Optional[TokenPriceOracle] = None


def get_price_oracle() -> TokenPriceOracle:
    """Get the global price oracle instance"""
    global _price_oracle
    if _price_oracle is None:
        _price_oracle = TokenPriceOracle()
    return _price_oracle
