'''
Tests for tally.core.trade_service.TradeService.
'''

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from tally.core.domain.enums import OperationKind
from tally.core.domain.errors import (
    ExhaustedRetries,
    InsufficientPosition,
    TransientPersistenceFailure,
)
from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote
from tally.core.retry_policy import RetryPolicy
from tally.core.trade_service import TradeService
from tally.infrastructure.ledger_store import SqliteSessionFactory

_TS = datetime(2026, 1, 1, tzinfo=timezone.utc)
_USER = 1
_ASSET = 7


def _op(
    kind: OperationKind,
    qty: int,
    price: str = '100.00',
    fee: str = '0',
    minutes: int = 0,
) -> Operation:

    return Operation(
        user_id=_USER,
        asset_id=_ASSET,
        quantity=qty,
        unit_price=Decimal(price),
        kind=kind,
        brokerage_fee=Decimal(fee),
        executed_at=_TS + timedelta(minutes=minutes),
    )


@pytest.fixture
def sessions(tmp_path: Path) -> SqliteSessionFactory:

    return SqliteSessionFactory(str(tmp_path / 'tally.db'))


@pytest.mark.asyncio
async def test_first_buy_creates_position(sessions: SqliteSessionFactory) -> None:

    position = await TradeService(sessions).record_operation(
        _op(OperationKind.BUY, 10, fee='5.00')
    )
    assert position.quantity == 10
    assert position.average_price == Decimal('100.50')

    async with sessions() as store:
        assert await store.get_position(_USER, _ASSET) == position
        assert len(await store.read_operations(_USER, _ASSET)) == 1


@pytest.mark.asyncio
async def test_operation_marked_at_latest_quote(sessions: SqliteSessionFactory) -> None:

    async with sessions() as store:
        await store.insert_quote(Quote(asset_id=_ASSET, unit_price=Decimal('120.00'), observed_at=_TS))

    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 10, fee='5.00'))
    position = await trades.record_operation(_op(OperationKind.SELL, 4, minutes=1))

    assert position.quantity == 6
    assert position.average_price == Decimal('100.50')
    assert position.unrealized_pnl == Decimal('117.00')


@pytest.mark.asyncio
async def test_oversell_writes_nothing(sessions: SqliteSessionFactory) -> None:

    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 3))

    with pytest.raises(InsufficientPosition):
        await trades.record_operation(_op(OperationKind.SELL, 5, minutes=1))

    async with sessions() as store:
        assert len(await store.read_operations(_USER, _ASSET)) == 1
        position = await store.get_position(_USER, _ASSET)
    assert position is not None
    assert position.quantity == 3


@pytest.mark.asyncio
async def test_sell_to_zero_keeps_row_with_reset_average(sessions: SqliteSessionFactory) -> None:

    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 3, price='40'))
    position = await trades.record_operation(_op(OperationKind.SELL, 3, minutes=1))

    assert position == Position.empty(_USER, _ASSET)
    async with sessions() as store:
        assert await store.get_position(_USER, _ASSET) == position


@pytest.mark.asyncio
async def test_rebuild_matches_incremental(sessions: SqliteSessionFactory) -> None:

    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 5, price='10.00'))
    await trades.record_operation(_op(OperationKind.BUY, 5, price='20.00', minutes=1))
    incremental = await trades.record_operation(_op(OperationKind.SELL, 2, minutes=2))

    async with sessions() as store:
        await store.upsert_position(Position.empty(_USER, _ASSET))

    rebuilt = await trades.rebuild_position(_USER, _ASSET)
    assert rebuilt == incremental
    assert rebuilt.average_price == Decimal('15.00')
    assert rebuilt.quantity == 8


@pytest.mark.asyncio
async def test_transient_failure_exhausts(sessions: SqliteSessionFactory) -> None:

    calls = 0

    def failing():
        nonlocal calls
        calls += 1
        raise TransientPersistenceFailure('database is locked')

    policy = RetryPolicy(max_attempts=2, base_delay=0.0)
    with pytest.raises(ExhaustedRetries) as info:
        await TradeService(failing, policy).record_operation(_op(OperationKind.BUY, 1))

    assert calls == 2
    assert info.value.attempts == 2


@pytest.mark.asyncio
async def test_concurrent_sells_cannot_oversell(sessions: SqliteSessionFactory) -> None:

    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 10))

    results = await asyncio.gather(
        trades.record_operation(_op(OperationKind.SELL, 10, minutes=1)),
        trades.record_operation(_op(OperationKind.SELL, 10, minutes=2)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InsufficientPosition) for r in results) == 1
    assert sum(isinstance(r, Position) for r in results) == 1

    async with sessions() as store:
        ledger = await store.read_operations(_USER, _ASSET)
        position = await store.get_position(_USER, _ASSET)
    assert position is not None
    assert position.quantity == sum(op.signed_quantity for op in ledger) == 0


@pytest.mark.asyncio
async def test_concurrent_buys_keep_every_lot(sessions: SqliteSessionFactory) -> None:

    trades = TradeService(sessions)
    await asyncio.gather(*(
        trades.record_operation(_op(OperationKind.BUY, 1, price=str(10 * n), minutes=n))
        for n in range(1, 6)
    ))

    async with sessions() as store:
        position = await store.get_position(_USER, _ASSET)
        ledger = await store.read_operations(_USER, _ASSET)
    assert position is not None
    assert len(ledger) == 5
    assert position.quantity == 5
    assert abs(position.average_price - Decimal('30')) < Decimal('1e-20')
