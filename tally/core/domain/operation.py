'''
Operation dataclass representing one executed buy or sell trade.

Operations are immutable ledger entries. Construction rejects values
that the position recalculator would refuse, raising InvalidOperation.
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from tally.core.domain._require_id import _require_aware, _require_id
from tally.core.domain.enums import OperationKind
from tally.core.domain.errors import InvalidOperation


__all__ = ['Operation']

_ZERO = Decimal(0)


@dataclass(frozen=True)
class Operation:

    '''
    A single executed trade for a user in an asset.

    Args:
        user_id (int): Investor that executed the trade.
        asset_id (int): Traded asset.
        quantity (int): Traded units, must be positive.
        unit_price (Decimal): Execution price per unit, must be positive.
        kind (OperationKind): Buy or sell.
        brokerage_fee (Decimal): Fee charged, must be non-negative.
        executed_at (datetime): Execution time, must be timezone-aware.
    '''

    user_id: int
    asset_id: int
    quantity: int
    unit_price: Decimal
    kind: OperationKind
    brokerage_fee: Decimal
    executed_at: datetime

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        _require_id('Operation', 'user_id', self.user_id)
        _require_id('Operation', 'asset_id', self.asset_id)
        _require_aware('Operation', 'executed_at', self.executed_at)

        if not isinstance(self.kind, OperationKind):
            msg = 'Operation.kind must be an OperationKind'
            raise InvalidOperation(msg)
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            msg = 'Operation.quantity must be an integer'
            raise InvalidOperation(msg)
        if self.quantity <= 0:
            msg = 'Operation.quantity must be positive'
            raise InvalidOperation(msg)
        for field in ('unit_price', 'brokerage_fee'):
            value = getattr(self, field)
            if not isinstance(value, Decimal) or not value.is_finite():
                msg = f'Operation.{field} must be a finite Decimal'
                raise InvalidOperation(msg)
        if self.unit_price <= _ZERO:
            msg = 'Operation.unit_price must be positive'
            raise InvalidOperation(msg)
        if self.brokerage_fee < _ZERO:
            msg = 'Operation.brokerage_fee must be non-negative'
            raise InvalidOperation(msg)

    @property
    def signed_quantity(self) -> int:

        '''Return quantity signed by direction: positive for BUY, negative for SELL.'''

        return self.quantity if self.kind is OperationKind.BUY else -self.quantity

    @property
    def position_key(self) -> tuple[int, int]:

        '''Return the (user_id, asset_id) key of the position this operation moves.'''

        return (self.user_id, self.asset_id)
