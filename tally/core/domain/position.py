'''
Position dataclass representing a user's holding in one asset.

Positions are immutable values: every operation or quote produces a
new Position. Mutation logic belongs in the position calculator, not here.
'''

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tally.core.domain._require_id import _require_id


__all__ = ['Position']

_ZERO = Decimal(0)


@dataclass(frozen=True)
class Position:

    '''
    A position tracked per user_id per asset_id.

    Args:
        user_id (int): Investor that holds the position.
        asset_id (int): Held asset.
        quantity (int): Units held, must be non-negative.
        average_price (Decimal): Weighted average acquisition price, fees included.
        unrealized_pnl (Decimal): Mark-to-market profit or loss at the latest quote.
    '''

    user_id: int
    asset_id: int
    quantity: int
    average_price: Decimal
    unrealized_pnl: Decimal = _ZERO

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        _require_id('Position', 'user_id', self.user_id)
        _require_id('Position', 'asset_id', self.asset_id)

        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            msg = 'Position.quantity must be an integer'
            raise ValueError(msg)

        if self.quantity < 0:
            msg = 'Position.quantity must be non-negative'
            raise ValueError(msg)

        if self.average_price < _ZERO:
            msg = 'Position.average_price must be non-negative'
            raise ValueError(msg)

    @classmethod
    def empty(cls, user_id: int, asset_id: int) -> Position:

        '''
        Return the zero position for a pair that has not traded yet.

        Args:
            user_id (int): Investor identifier.
            asset_id (int): Asset identifier.

        Returns:
            Position: Position with zero quantity, price, and P&L
        '''

        return cls(
            user_id=user_id,
            asset_id=asset_id,
            quantity=0,
            average_price=_ZERO,
            unrealized_pnl=_ZERO,
        )

    @property
    def key(self) -> tuple[int, int]:

        '''Return the (user_id, asset_id) uniqueness key.'''

        return (self.user_id, self.asset_id)

    @property
    def is_closed(self) -> bool:

        '''Return True if position quantity has reached zero.'''

        return self.quantity == 0
