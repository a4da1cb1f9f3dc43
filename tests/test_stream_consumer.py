'''
Tests for tally.infrastructure.stream_consumer.
'''

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite
import pytest

from tally.core.domain.enums import ConsumerState, MessageOutcome, OperationKind
from tally.core.domain.errors import ConstraintViolation, TransientPersistenceFailure
from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote
from tally.core.retry_policy import RetryPolicy
from tally.core.trade_service import TradeService
from tally.infrastructure.ledger_store import SqliteSessionFactory
from tally.infrastructure.quote_codec import encode_quote
from tally.infrastructure.stream_consumer import QuoteConsumer, run_partitions

_TS = datetime(2026, 1, 1, tzinfo=timezone.utc)
_ASSET = 7
_USER = 1


def _quote(price: str = '120.00', minutes: int = 0, asset_id: int = _ASSET) -> Quote:

    return Quote(
        asset_id=asset_id,
        unit_price=Decimal(price),
        observed_at=_TS + timedelta(minutes=minutes),
    )


def _msg(price: str = '120.00', minutes: int = 0, asset_id: int = _ASSET) -> bytes:

    return encode_quote(_quote(price, minutes, asset_id))


def _op(kind: OperationKind, qty: int, price: str = '100.00', fee: str = '0') -> Operation:

    return Operation(
        user_id=_USER,
        asset_id=_ASSET,
        quantity=qty,
        unit_price=Decimal(price),
        kind=kind,
        brokerage_fee=Decimal(fee),
        executed_at=_TS,
    )


async def _stream(*messages: bytes) -> AsyncIterator[bytes]:

    for message in messages:
        yield message


async def _endless() -> AsyncIterator[bytes]:

    await asyncio.Event().wait()
    yield b''


def _no_wait_policy(
    max_attempts: int = 3,
    base_delay: float = 2.0,
) -> tuple[RetryPolicy, list[float]]:

    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay)
    waits: list[float] = []

    async def fake_wait(delay: float) -> bool:
        waits.append(delay)
        return False

    policy._wait = fake_wait  # type: ignore[method-assign]
    return policy, waits


class _FlakySessions:

    '''Wrap a session factory so the first N sessions fail transiently.'''

    def __init__(self, inner: SqliteSessionFactory, failures: int) -> None:

        self._inner = inner
        self.failures = failures
        self.calls = 0

    def __call__(self) -> Any:

        self.calls += 1
        if self.calls <= self.failures:
            return self._failing()
        return self._inner()

    @asynccontextmanager
    async def _failing(self) -> AsyncIterator[Any]:

        raise TransientPersistenceFailure(f'database is locked #{self.calls}')
        yield


class _RacingStore:

    '''Store that reports a quote missing, then rejects the insert.'''

    def __init__(self, appears_after_insert: bool) -> None:

        self.appears_after_insert = appears_after_insert
        self.insert_attempted = False
        self.upserts: list[Position] = []

    async def exists_quote(self, asset_id: int, observed_at: datetime) -> bool:

        return self.insert_attempted and self.appears_after_insert

    async def insert_quote(self, quote: Quote) -> None:

        self.insert_attempted = True
        raise ConstraintViolation('UNIQUE constraint failed: quotes.asset_id, quotes.observed_at')

    async def latest_quote(self, asset_id: int) -> Quote | None:

        return None

    async def positions_for_asset(self, asset_id: int) -> list[Position]:

        return []

    async def upsert_position(self, position: Position) -> None:

        self.upserts.append(position)


def _racing_sessions(store: _RacingStore) -> Any:

    @asynccontextmanager
    async def sessions() -> AsyncIterator[_RacingStore]:
        yield store

    return sessions


@pytest.fixture
def db_path(tmp_path: Path) -> str:

    return str(tmp_path / 'tally.db')


async def _count_quotes(db_path: str, asset_id: int = _ASSET) -> int:

    async with aiosqlite.connect(db_path) as conn:
        async with conn.execute(
            'SELECT COUNT(*) FROM quotes WHERE asset_id = ?', (asset_id,)
        ) as cursor:
            row = await cursor.fetchone()
    assert row is not None
    return int(row[0])


async def _position(db_path: str, user_id: int = _USER) -> Position | None:

    async with SqliteSessionFactory(db_path)() as store:
        return await store.get_position(user_id, _ASSET)


@pytest.mark.asyncio
async def test_duplicate_quote_stored_once(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    stats = await consumer.run(_stream(_msg(), _msg()))

    assert stats[MessageOutcome.COMMITTED] == 1
    assert stats[MessageOutcome.DUPLICATE] == 1
    assert await _count_quotes(db_path) == 1
    assert consumer.state is ConsumerState.STOPPED


@pytest.mark.asyncio
async def test_many_redeliveries_single_row(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    stats = await consumer.run(_stream(*[_msg()] * 5))

    assert stats[MessageOutcome.COMMITTED] == 1
    assert stats[MessageOutcome.DUPLICATE] == 4
    assert await _count_quotes(db_path) == 1


@pytest.mark.asyncio
async def test_quote_revalues_holders(db_path: str) -> None:

    sessions = SqliteSessionFactory(db_path)
    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 10, fee='5.00'))
    await trades.record_operation(_op(OperationKind.SELL, 4))

    consumer = QuoteConsumer(sessions)
    await consumer.run(_stream(_msg('120.00')))

    position = await _position(db_path)
    assert position == Position(
        user_id=_USER,
        asset_id=_ASSET,
        quantity=6,
        average_price=Decimal('100.50'),
        unrealized_pnl=Decimal('117.00'),
    )


@pytest.mark.asyncio
async def test_quote_without_holders_creates_no_position(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    stats = await consumer.run(_stream(_msg()))

    assert stats[MessageOutcome.COMMITTED] == 1
    assert await _position(db_path) is None


@pytest.mark.asyncio
async def test_older_quote_stored_but_latest_price_wins(db_path: str) -> None:

    sessions = SqliteSessionFactory(db_path)
    await TradeService(sessions).record_operation(_op(OperationKind.BUY, 2, price='10'))

    consumer = QuoteConsumer(sessions)
    stats = await consumer.run(_stream(_msg('15', minutes=5), _msg('11', minutes=1)))

    assert stats[MessageOutcome.COMMITTED] == 2
    assert await _count_quotes(db_path) == 2
    position = await _position(db_path)
    assert position is not None
    assert position.unrealized_pnl == Decimal('10')


@pytest.mark.asyncio
async def test_malformed_message_dropped_and_loop_continues(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    stats = await consumer.run(_stream(b'{"asset_id": 7}', b'\xff\xfe', _msg()))

    assert stats[MessageOutcome.DROPPED_MALFORMED] == 2
    assert stats[MessageOutcome.COMMITTED] == 1


@pytest.mark.asyncio
async def test_malformed_message_never_touches_storage(db_path: str) -> None:

    sessions = _FlakySessions(SqliteSessionFactory(db_path), failures=0)
    consumer = QuoteConsumer(sessions)
    outcome = await consumer.process(b'not json')

    assert outcome is MessageOutcome.DROPPED_MALFORMED
    assert consumer.state is ConsumerState.SKIPPING
    assert sessions.calls == 0


@pytest.mark.asyncio
async def test_transient_failure_then_success(db_path: str) -> None:

    sessions = _FlakySessions(SqliteSessionFactory(db_path), failures=2)
    policy, waits = _no_wait_policy()
    consumer = QuoteConsumer(sessions, policy)

    outcome = await consumer.process(_msg())

    assert outcome is MessageOutcome.COMMITTED
    assert consumer.state is ConsumerState.COMMITTING
    assert sessions.calls == 3
    assert waits == [4.0, 8.0]
    assert await _count_quotes(db_path) == 1


@pytest.mark.asyncio
async def test_retry_exhaustion_skips_without_raising(db_path: str) -> None:

    sessions = _FlakySessions(SqliteSessionFactory(db_path), failures=100)
    policy, waits = _no_wait_policy(max_attempts=3, base_delay=2.0)
    consumer = QuoteConsumer(sessions, policy)

    stats = await consumer.run(_stream(_msg(minutes=0), _msg(minutes=1)))

    assert stats[MessageOutcome.DROPPED_EXHAUSTED] == 2
    assert sessions.calls == 6
    assert waits == [4.0, 8.0, 4.0, 8.0]
    assert consumer.state is ConsumerState.STOPPED


@pytest.mark.asyncio
async def test_exhausted_message_leaves_position_untouched(db_path: str) -> None:

    inner = SqliteSessionFactory(db_path)
    await TradeService(inner).record_operation(_op(OperationKind.BUY, 2, price='10'))
    await QuoteConsumer(inner).run(_stream(_msg('12')))

    sessions = _FlakySessions(inner, failures=3)
    policy, _ = _no_wait_policy()
    outcome = await QuoteConsumer(sessions, policy).process(_msg('50', minutes=1))

    assert outcome is MessageOutcome.DROPPED_EXHAUSTED
    position = await _position(db_path)
    assert position is not None
    assert position.unrealized_pnl == Decimal('4')


@pytest.mark.asyncio
async def test_constraint_race_resolved_as_duplicate() -> None:

    store = _RacingStore(appears_after_insert=True)
    consumer = QuoteConsumer(_racing_sessions(store))

    outcome = await consumer.process(_msg())

    assert outcome is MessageOutcome.DUPLICATE
    assert store.upserts == []


@pytest.mark.asyncio
async def test_unexplained_constraint_violation_dropped_not_retried() -> None:

    store = _RacingStore(appears_after_insert=False)
    policy, waits = _no_wait_policy()
    consumer = QuoteConsumer(_racing_sessions(store), policy)

    stats = await consumer.run(_stream(_msg(), _msg(minutes=1)))

    assert stats[MessageOutcome.DROPPED_FATAL] == 2
    assert waits == []


@pytest.mark.asyncio
async def test_stop_unblocks_pending_receive(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    task = asyncio.create_task(consumer.run(_endless()))

    await asyncio.sleep(0.05)
    assert consumer.state is ConsumerState.RECEIVING
    consumer.stop()

    stats = await asyncio.wait_for(task, timeout=2.0)
    assert consumer.state is ConsumerState.STOPPED
    assert sum(stats.values()) == 0


@pytest.mark.asyncio
async def test_stop_during_backoff_stops_loop(db_path: str) -> None:

    sessions = _FlakySessions(SqliteSessionFactory(db_path), failures=100)
    consumer = QuoteConsumer(sessions, RetryPolicy(max_attempts=3, base_delay=60.0))
    task = asyncio.create_task(consumer.run(_stream(_msg(), _msg(minutes=1))))

    await asyncio.sleep(0.05)
    assert consumer.state is ConsumerState.FAILING
    consumer.stop()

    stats = await asyncio.wait_for(task, timeout=2.0)
    assert stats[MessageOutcome.STOPPED] == 1
    assert sessions.calls == 1
    assert consumer.state is ConsumerState.STOPPED


@pytest.mark.asyncio
async def test_stop_before_run_processes_nothing(db_path: str) -> None:

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    consumer.stop()
    stats = await consumer.run(_stream(_msg()))

    assert sum(stats.values()) == 0
    assert not Path(db_path).exists()


@pytest.mark.asyncio
async def test_stream_error_propagates(db_path: str) -> None:

    async def broken() -> AsyncIterator[bytes]:
        yield _msg()
        raise ConnectionResetError('feed lost')

    consumer = QuoteConsumer(SqliteSessionFactory(db_path))
    with pytest.raises(ConnectionResetError):
        await consumer.run(broken())
    assert consumer.state is ConsumerState.STOPPED
    assert consumer.stats[MessageOutcome.COMMITTED] == 1


@pytest.mark.asyncio
async def test_run_partitions_independent_loops(db_path: str) -> None:

    sessions = SqliteSessionFactory(db_path)
    results = await run_partitions(
        sessions,
        {
            'p0': _stream(_msg(asset_id=7), _msg(asset_id=7)),
            'p1': _stream(_msg(asset_id=8), b'garbage'),
        },
    )

    assert results['p0'][MessageOutcome.COMMITTED] == 1
    assert results['p0'][MessageOutcome.DUPLICATE] == 1
    assert results['p1'][MessageOutcome.COMMITTED] == 1
    assert results['p1'][MessageOutcome.DROPPED_MALFORMED] == 1
    assert await _count_quotes(db_path, 7) == 1
    assert await _count_quotes(db_path, 8) == 1


@pytest.mark.asyncio
async def test_run_partitions_shared_stop(db_path: str) -> None:

    stop = asyncio.Event()
    task = asyncio.create_task(run_partitions(
        SqliteSessionFactory(db_path),
        {'p0': _endless(), 'p1': _endless()},
        stop_event=stop,
    ))

    await asyncio.sleep(0.05)
    stop.set()
    results = await asyncio.wait_for(task, timeout=2.0)
    assert set(results) == {'p0', 'p1'}


@pytest.mark.asyncio
async def test_run_partitions_failure_stops_and_drains_siblings(db_path: str) -> None:

    closed: list[str] = []

    async def broken() -> AsyncIterator[bytes]:
        yield _msg()
        raise ConnectionResetError('feed lost')

    async def idle() -> AsyncIterator[bytes]:
        try:
            await asyncio.Event().wait()
            yield b''
        finally:
            closed.append('idle')

    stop = asyncio.Event()
    with pytest.raises(ConnectionResetError):
        await asyncio.wait_for(
            run_partitions(
                SqliteSessionFactory(db_path),
                {'a': broken(), 'b': idle()},
                stop_event=stop,
            ),
            timeout=2.0,
        )

    assert stop.is_set()
    assert closed == ['idle']
    pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    assert pending == []


@pytest.mark.parametrize('quote_first', [True, False])
@pytest.mark.asyncio
async def test_quote_racing_trade_marks_final_position(db_path: str, quote_first: bool) -> None:

    sessions = SqliteSessionFactory(db_path)
    trades = TradeService(sessions)
    await trades.record_operation(_op(OperationKind.BUY, 10))

    consumer = QuoteConsumer(sessions)
    quote = consumer.process(_msg('120.00'))
    buy = trades.record_operation(_op(OperationKind.BUY, 5))
    await asyncio.gather(*((quote, buy) if quote_first else (buy, quote)))

    position = await _position(db_path)
    assert position is not None
    assert position.quantity == 15
    assert position.average_price == Decimal('100.00')
    assert position.unrealized_pnl == Decimal('300.00')
