'''
Fold operations and quotes into Position values.

Every function here is pure: it takes the current Position and returns
a new one. Positions are a derived view of the operation ledger plus
the latest quote, so replay_position() can rebuild any of them.
'''

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from decimal import Decimal

from tally.core.domain.enums import OperationKind
from tally.core.domain.errors import InsufficientPosition, InvalidInput, InvalidOperation
from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote

__all__ = [
    'apply_operation',
    'apply_quote',
    'replay_position',
    'weighted_average_price',
]

_log = logging.getLogger(__name__)

_ZERO = Decimal(0)


def apply_operation(position: Position, operation: Operation) -> Position:

    '''
    Apply a buy or sell operation to a position.

    Buys capitalise the brokerage fee into the weighted average price.
    Sells leave the average price unchanged, except that average price
    and unrealized P&L reset to zero once no units remain. Otherwise
    unrealized P&L is carried over; callers re-mark the result with the
    latest quote.

    Args:
        position (Position): Current position for the operation's user and asset
        operation (Operation): Operation to apply

    Returns:
        Position: New position after the operation

    Raises:
        InvalidOperation: If quantity or price is non-positive, the fee is
            negative, or the operation targets a different user or asset
        InsufficientPosition: If a sell exceeds the quantity held
    '''

    if operation.position_key != position.key:
        msg = (
            f'Operation for user={operation.user_id} asset={operation.asset_id} '
            f'cannot apply to position user={position.user_id} asset={position.asset_id}'
        )
        raise InvalidOperation(msg)

    if operation.quantity <= 0:
        msg = 'Operation.quantity must be positive'
        raise InvalidOperation(msg)

    if operation.unit_price <= _ZERO:
        msg = 'Operation.unit_price must be positive'
        raise InvalidOperation(msg)

    if operation.brokerage_fee < _ZERO:
        msg = 'Operation.brokerage_fee must be non-negative'
        raise InvalidOperation(msg)

    if operation.kind is OperationKind.BUY:
        new_qty = position.quantity + operation.quantity
        new_avg = (
            position.quantity * position.average_price
            + operation.quantity * operation.unit_price
            + operation.brokerage_fee
        ) / new_qty
        return replace(position, quantity=new_qty, average_price=new_avg)

    new_qty = position.quantity - operation.quantity
    if new_qty < 0:
        msg = (
            f'Cannot sell {operation.quantity} of asset={operation.asset_id}: '
            f'user={operation.user_id} holds {position.quantity}'
        )
        raise InsufficientPosition(msg, held=position.quantity, requested=operation.quantity)

    if new_qty == 0:
        _log.debug(
            'position closed: user=%s asset=%s',
            position.user_id,
            position.asset_id,
        )
        return replace(position, quantity=0, average_price=_ZERO, unrealized_pnl=_ZERO)

    return replace(position, quantity=new_qty)


def apply_quote(position: Position, quote: Quote) -> Position:

    '''
    Mark a position to market at the given quote.

    Args:
        position (Position): Position in the quoted asset
        quote (Quote): Quote to mark with

    Returns:
        Position: New position with recomputed unrealized P&L

    Raises:
        ValueError: If the quote is for a different asset
    '''

    if quote.asset_id != position.asset_id:
        msg = (
            f'Quote for asset={quote.asset_id} cannot mark position '
            f'in asset={position.asset_id}'
        )
        raise ValueError(msg)

    pnl = (quote.unit_price - position.average_price) * position.quantity
    return replace(position, unrealized_pnl=pnl)


def weighted_average_price(lots: Iterable[tuple[int, Decimal]]) -> Decimal:

    '''
    Compute the weighted average price of a sequence of buy lots.

    Args:
        lots (Iterable[tuple[int, Decimal]]): Ordered (quantity, price) pairs

    Returns:
        Decimal: Sum of quantity times price divided by total quantity

    Raises:
        InvalidInput: If lots is empty or any quantity or price is non-positive
    '''

    total_qty = 0
    total_cost = _ZERO
    count = 0

    for qty, price in lots:
        count += 1
        if qty <= 0:
            msg = f'Lot {count} has non-positive quantity {qty}'
            raise InvalidInput(msg)
        if price <= _ZERO:
            msg = f'Lot {count} has non-positive price {price}'
            raise InvalidInput(msg)
        total_qty += qty
        total_cost += qty * price

    if count == 0:
        msg = 'Cannot average an empty sequence of lots'
        raise InvalidInput(msg)

    return total_cost / total_qty


def replay_position(
    user_id: int,
    asset_id: int,
    operations: Iterable[Operation],
    latest_quote: Quote | None = None,
) -> Position:

    '''
    Rebuild a position by folding its ledger from genesis.

    Args:
        user_id (int): Investor identifier
        asset_id (int): Asset identifier
        operations (Iterable[Operation]): Operations ordered by executed_at
        latest_quote (Quote | None): Most recent quote for the asset, if any

    Returns:
        Position: Reconstructed position

    Raises:
        InvalidOperation: If any operation belongs to another pair
        InsufficientPosition: If the ledger sells more than it bought
    '''

    position = Position.empty(user_id, asset_id)
    for operation in operations:
        position = apply_operation(position, operation)

    if latest_quote is not None:
        position = apply_quote(position, latest_quote)

    return position
