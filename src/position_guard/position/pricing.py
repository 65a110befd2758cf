"""
Price/Risk Aggregator.

Fetches current prices for open positions and derives their current value,
margin ratio and liquidation risk. Pricing strategy depends on the domain:

- leveraged (perps): unrealized P&L from entry, side and a live mark price
- yield-bearing (dlmm): entry value accrued at a daily rate derived from
  the pool's time-weighted annualized yield
- share-based (polymarket): shares x current share price
- spot: entry value scaled by the price move

A failed lookup for one position falls back to its last-known value. Only
a source-wide outage (MarketDataUnavailable) drops a whole domain for the
tick.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from position_guard.errors import MarketDataUnavailable
from position_guard.interfaces import MarketDataSource
from position_guard.position.models import (
    Domain,
    LiquidationRiskResult,
    Position,
    PositionSide,
    PriceData,
    RecommendedAction,
    RiskLevel,
)


logger = logging.getLogger(__name__)

DEFAULT_MAINTENANCE_MARGIN = 0.03

# Margin-ratio thresholds (strictly greater than)
SAFE_MARGIN_RATIO = 0.50
WARNING_MARGIN_RATIO = 0.25
DANGER_MARGIN_RATIO = 0.15
REDUCE_HALF_MARGIN_RATIO = 0.10


# ============================================================================
# Liquidation math
# ============================================================================

def calculate_liquidation_price(
    entry_price: float,
    leverage: float,
    side: PositionSide,
    maintenance_margin: float = DEFAULT_MAINTENANCE_MARGIN
) -> float:
    """
    Estimate the liquidation price of a leveraged position.

    Long:  entry x (1 - 1/leverage + maintenance_margin)
    Short: entry x (1 + 1/leverage - maintenance_margin)
    """
    if side == PositionSide.SHORT:
        return entry_price * (1 + 1 / leverage - maintenance_margin)
    return entry_price * (1 - 1 / leverage + maintenance_margin)


def classify_liquidation_risk(margin_ratio: float) -> Tuple[RiskLevel, RecommendedAction]:
    """
    Map a margin ratio to a risk level and recommended action.

    > 0.50 safe/none, > 0.25 warning/monitor, > 0.15 danger/reduce_25,
    otherwise critical with reduce_50 above 0.10 and close at or below it.
    """
    if margin_ratio > SAFE_MARGIN_RATIO:
        return RiskLevel.SAFE, RecommendedAction.NONE
    if margin_ratio > WARNING_MARGIN_RATIO:
        return RiskLevel.WARNING, RecommendedAction.MONITOR
    if margin_ratio > DANGER_MARGIN_RATIO:
        return RiskLevel.DANGER, RecommendedAction.REDUCE_25
    if margin_ratio > REDUCE_HALF_MARGIN_RATIO:
        return RiskLevel.CRITICAL, RecommendedAction.REDUCE_50
    return RiskLevel.CRITICAL, RecommendedAction.CLOSE


def unrealized_pnl(position: Position, mark_price: float) -> float:
    """USD P&L of a leveraged position at the given mark."""
    entry = position.entry_price
    if not entry:
        return 0.0
    move = (mark_price - entry) / entry
    if position.side == PositionSide.SHORT:
        move = -move
    return position.size_usd * move


def margin_ratio(position: Position, mark_price: float) -> Optional[float]:
    """(margin + pnl) / margin, with margin = size / leverage. None without margin."""
    if not position.leverage or position.leverage <= 0:
        return None
    margin = position.size_usd / position.leverage
    if margin <= 0:
        return None
    return (margin + unrealized_pnl(position, mark_price)) / margin


# ============================================================================
# Aggregator
# ============================================================================

class PriceRiskAggregator:
    """
    Computes current pricing and liquidation risk for open positions.

    Example:
        aggregator = PriceRiskAggregator({Domain.PERPS: perps_feed, Domain.DLMM: pool_feed})
        prices = await aggregator.current_prices({Domain.PERPS: positions})
    """

    def __init__(
        self,
        market_data: Optional[Dict[Domain, MarketDataSource]] = None,
        leveraged_domains: Iterable[str] = ("perps",),
        maintenance_margin: float = DEFAULT_MAINTENANCE_MARGIN,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        """
        Initialize aggregator.

        Args:
            market_data: Market data source per domain
            leveraged_domains: Domains priced with mark price and margin
            maintenance_margin: Maintenance margin fraction for liquidation prices
            now: Clock returning naive UTC datetimes (yield accrual)
        """
        self.market_data: Dict[Domain, MarketDataSource] = {
            Domain(domain): source for domain, source in (market_data or {}).items()
        }
        self.leveraged_domains = {Domain(d) for d in leveraged_domains}
        self.maintenance_margin = maintenance_margin
        self._now = now
        self.logger = logging.getLogger(f"{__name__}.PriceRiskAggregator")

    def is_leveraged(self, domain: Domain) -> bool:
        return Domain(domain) in self.leveraged_domains

    # ========================================================================
    # Prices
    # ========================================================================

    async def current_prices(
        self,
        positions_by_domain: Dict[Domain, List[Position]]
    ) -> Dict[str, PriceData]:
        """
        Price every given position.

        Domains are fetched concurrently. A domain whose source is
        unreachable is omitted from the result.

        Returns:
            Map of position id -> PriceData
        """
        domains = [d for d, positions in positions_by_domain.items() if positions]
        results = await asyncio.gather(
            *(self._price_domain(Domain(d), positions_by_domain[d]) for d in domains),
            return_exceptions=True
        )

        prices: Dict[str, PriceData] = {}
        for domain, result in zip(domains, results):
            if isinstance(result, MarketDataUnavailable):
                self.logger.warning(f"[Pricing] {Domain(domain).value} market data unavailable: {result}")
                continue
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self.logger.error(f"[Pricing] Failed to price {Domain(domain).value} positions: {result}")
                continue
            prices.update(result)

        return prices

    async def _price_domain(self, domain: Domain, positions: List[Position]) -> Dict[str, PriceData]:
        source = self.market_data.get(domain)
        if source is None:
            self.logger.debug(f"[Pricing] No market data source for {domain.value}, using last-known values")
            return self._fallback_all(positions, "no market data source")

        if self.is_leveraged(domain):
            return await self._price_leveraged(source, positions)

        pricer = {
            Domain.DLMM: self._price_yield,
            Domain.POLYMARKET: self._price_shares,
        }.get(domain, self._price_spot)

        results = await asyncio.gather(
            *(pricer(source, position) for position in positions),
            return_exceptions=True
        )

        prices: Dict[str, PriceData] = {}
        for position, result in zip(positions, results):
            if isinstance(result, MarketDataUnavailable):
                raise result
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                data = self._fallback(position, result)
            else:
                data = result
            if data is not None:
                prices[position.id] = data
        return prices

    async def fetch_mark_prices(self, domain: Domain, symbols: Iterable[str]) -> Dict[str, float]:
        """
        Batch-fetch mark prices for a leveraged domain.

        Symbols whose lookup failed are absent from the result.

        Raises:
            MarketDataUnavailable: The source cannot be reached or is not configured
        """
        domain = Domain(domain)
        source = self.market_data.get(domain)
        if source is None:
            raise MarketDataUnavailable(f"No market data source configured for {domain.value}")
        symbols = list(dict.fromkeys(symbols))
        if not symbols:
            return {}
        return await source.get_prices(symbols)

    async def _price_leveraged(self, source: MarketDataSource, positions: List[Position]) -> Dict[str, PriceData]:
        try:
            marks = await source.get_prices([p.target for p in positions])
        except MarketDataUnavailable:
            raise
        except Exception as e:
            self.logger.warning(f"[Pricing] Batch mark fetch failed: {e}")
            marks = {}

        prices: Dict[str, PriceData] = {}
        for position in positions:
            mark = marks.get(position.target)
            if mark is None:
                data = self._fallback(position, f"no mark price for {position.target}")
            else:
                data = self.price_leveraged(position, mark)
            if data is not None:
                prices[position.id] = data
        return prices

    def price_leveraged(self, position: Position, mark_price: float, stale: bool = False) -> PriceData:
        """Value and margin ratio of a leveraged position at a mark price."""
        pnl = unrealized_pnl(position, mark_price)
        return PriceData(
            position_id=position.id,
            price=mark_price,
            current_value_usd=position.size_usd + pnl,
            margin_ratio=margin_ratio(position, mark_price),
            stale=stale,
        )

    async def _price_yield(self, source: MarketDataSource, position: Position) -> PriceData:
        apy = await source.get_annualized_yield(position.target)
        days_held = max(0.0, (self._now() - position.opened_at).total_seconds() / 86400)
        daily_rate = apy / 100 / 365
        value = position.cost_basis_usd * (1 + daily_rate * days_held)
        return PriceData(position_id=position.id, price=value, current_value_usd=value)

    async def _price_shares(self, source: MarketDataSource, position: Position) -> PriceData:
        shares = position.metadata.get("shares", position.size)
        if shares is None:
            raise ValueError(f"position {position.id} has no share count")
        share_price = await source.get_price(position.target)
        return PriceData(
            position_id=position.id,
            price=share_price,
            current_value_usd=float(shares) * share_price,
        )

    async def _price_spot(self, source: MarketDataSource, position: Position) -> PriceData:
        price = await source.get_price(position.target)
        quantity = position.metadata.get("quantity")
        if quantity is not None:
            value = float(quantity) * price
        elif position.entry_price:
            value = position.cost_basis_usd * price / position.entry_price
        else:
            value = position.current_value_usd
        return PriceData(position_id=position.id, price=price, current_value_usd=value)

    def _fallback(self, position: Position, error) -> Optional[PriceData]:
        """Last-known pricing for a position whose lookup failed."""
        self.logger.warning(
            f"[Pricing] Price lookup failed for {position.id} ({position.target}), "
            f"using last-known value: {error}"
        )
        last_price = position.current_price
        if last_price is None and position.domain == Domain.DLMM:
            last_price = position.current_value_usd
        if last_price is None:
            return None

        if self.is_leveraged(position.domain):
            return self.price_leveraged(position, last_price, stale=True)

        return PriceData(
            position_id=position.id,
            price=last_price,
            current_value_usd=position.current_value_usd,
            stale=True,
        )

    def _fallback_all(self, positions: List[Position], reason: str) -> Dict[str, PriceData]:
        prices = {}
        for position in positions:
            data = self._fallback(position, reason)
            if data is not None:
                prices[position.id] = data
        return prices

    # ========================================================================
    # Liquidation risk
    # ========================================================================

    def assess_position(self, position: Position, mark_price: float) -> Optional[LiquidationRiskResult]:
        """
        Assess liquidation risk of one leveraged position.

        Returns:
            LiquidationRiskResult, or None if the position lacks entry price or margin
        """
        ratio = margin_ratio(position, mark_price)
        if ratio is None or not position.entry_price or mark_price <= 0:
            self.logger.warning(f"[Liquidation] Cannot assess {position.id}: missing entry price or margin")
            return None

        liquidation_price = calculate_liquidation_price(
            position.entry_price,
            position.leverage,
            position.side,
            self.maintenance_margin,
        )
        risk_level, action = classify_liquidation_risk(ratio)

        return LiquidationRiskResult(
            position_id=position.id,
            symbol=position.target,
            risk_level=risk_level,
            margin_ratio=ratio,
            liquidation_price=liquidation_price,
            current_price=mark_price,
            distance_to_liquidation_pct=abs((mark_price - liquidation_price) / mark_price) * 100,
            recommended_action=action,
        )
