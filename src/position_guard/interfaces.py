"""
Collaborator interfaces.

The risk core never talks to a database, a price feed or an exchange
directly. It consumes these abstract contracts, and the host application
supplies concrete adapters.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable

from position_guard.errors import MarketDataUnavailable
from position_guard.position.models import Domain, Position, PositionSide


@dataclass
class Fill:
    """Fill returned by an execution adapter."""
    fill_price: float
    order_id: str
    filled_usd: Optional[float] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


class PositionStore(ABC):
    """
    Persistent position/account store.

    Implementations enforce their own I/O timeouts.
    """

    @abstractmethod
    async def get_open_positions(self, domain: Domain) -> List[Position]:
        """
        Get all open positions for a domain.

        Args:
            domain: Market domain

        Returns:
            List of open positions
        """
        pass

    @abstractmethod
    async def close_position(
        self,
        domain: Domain,
        position_id: str,
        current_value_usd: float,
        realized_pnl: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Mark a position closed with its final value."""
        pass

    @abstractmethod
    async def update_position(
        self,
        position_id: str,
        current_value_usd: Optional[float] = None,
        current_price: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Update the live value/price of an open position."""
        pass


class MarketDataSource(ABC):
    """
    Market data for one domain.

    ``get_price`` may fail for a single symbol; implementations raise
    ``MarketDataUnavailable`` when the source itself cannot be reached.
    """

    @abstractmethod
    async def get_price(self, target: str) -> float:
        """
        Get current mark/mid price for a symbol or pool address.

        Args:
            target: Symbol, market ID or pool address

        Returns:
            Current price
        """
        pass

    async def get_prices(self, targets: Iterable[str]) -> Dict[str, float]:
        """
        Get prices for several targets at once.

        The default fans out to ``get_price`` and omits targets whose lookup
        failed. Sources with a batch endpoint should override this.
        """
        targets = list(dict.fromkeys(targets))
        results = await asyncio.gather(
            *(self.get_price(target) for target in targets),
            return_exceptions=True
        )
        prices = {}
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                if isinstance(result, (asyncio.CancelledError, MarketDataUnavailable)):
                    raise result
                continue
            prices[target] = result
        return prices

    async def get_annualized_yield(self, target: str) -> float:
        """
        Get the time-weighted annualized yield (percent) for a pool.

        Only yield-bearing domains implement this.
        """
        raise NotImplementedError(f"{self.__class__.__name__} does not provide yields")


class ExecutionAdapter(ABC):
    """
    Per-domain order placement (live mode only).

    Raises ``ConfigurationFailure`` on missing credentials and
    ``OrderRejected`` when the venue refuses the order.
    """

    @abstractmethod
    async def reduce_position(
        self,
        symbol: str,
        side: PositionSide,
        usd_amount: float
    ) -> Fill:
        """
        Reduce (or close) a position by a USD amount.

        Args:
            symbol: Symbol or market of the position
            side: Side of the position being reduced
            usd_amount: Notional to reduce

        Returns:
            Fill with price and order reference
        """
        pass
