'''
Quote, operation, and position storage backed by SQLite.

Quotes and operations are append-only. Positions hold one row per
(user_id, asset_id) and are replaced on every recompute. LedgerStore
works on a caller-owned aiosqlite connection; SqliteSessionFactory
opens one connection per unit of work and owns its transaction, which
takes the database write lock up front.
'''

from __future__ import annotations

import dataclasses
import enum
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, get_type_hints

import aiosqlite
import orjson

from tally.core.domain.errors import ConstraintViolation, TransientPersistenceFailure
from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote

__all__ = ['LedgerStore', 'SqliteSessionFactory']

_log = logging.getLogger(__name__)

_CREATE_QUOTES = '''
CREATE TABLE IF NOT EXISTS quotes (
    quote_seq INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id INTEGER NOT NULL,
    observed_at TEXT NOT NULL,
    unit_price TEXT NOT NULL,
    UNIQUE(asset_id, observed_at)
)'''

_CREATE_OPERATIONS = '''
CREATE TABLE IF NOT EXISTS operations (
    operation_seq INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    asset_id INTEGER NOT NULL,
    executed_at TEXT NOT NULL,
    payload BLOB NOT NULL
)'''

_CREATE_OPERATIONS_INDEX = (
    'CREATE INDEX IF NOT EXISTS ix_operations_pair '
    'ON operations (user_id, asset_id, executed_at, operation_seq)'
)

_CREATE_POSITIONS = '''
CREATE TABLE IF NOT EXISTS positions (
    user_id INTEGER NOT NULL,
    asset_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL,
    average_price TEXT NOT NULL,
    unrealized_pnl TEXT NOT NULL,
    UNIQUE(user_id, asset_id)
)'''

_EXISTS_QUOTE = 'SELECT 1 FROM quotes WHERE asset_id = ? AND observed_at = ? LIMIT 1'

_INSERT_QUOTE = (
    'INSERT INTO quotes (asset_id, observed_at, unit_price) VALUES (?, ?, ?)'
)

_LATEST_QUOTE = (
    'SELECT asset_id, observed_at, unit_price FROM quotes '
    'WHERE asset_id = ? ORDER BY observed_at DESC LIMIT 1'
)

_INSERT_OPERATION = (
    'INSERT INTO operations (user_id, asset_id, executed_at, payload) '
    'VALUES (?, ?, ?, ?)'
)

_SELECT_OPERATIONS = (
    'SELECT payload FROM operations WHERE user_id = ? AND asset_id = ? '
    'ORDER BY executed_at ASC, operation_seq ASC'
)

_SELECT_POSITION = (
    'SELECT user_id, asset_id, quantity, average_price, unrealized_pnl '
    'FROM positions WHERE user_id = ? AND asset_id = ?'
)

_SELECT_ASSET_POSITIONS = (
    'SELECT user_id, asset_id, quantity, average_price, unrealized_pnl '
    'FROM positions WHERE asset_id = ? ORDER BY user_id ASC'
)

_UPSERT_POSITION = '''
INSERT INTO positions (user_id, asset_id, quantity, average_price, unrealized_pnl)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(user_id, asset_id) DO UPDATE SET
    quantity = excluded.quantity,
    average_price = excluded.average_price,
    unrealized_pnl = excluded.unrealized_pnl'''


def _utc_text(value: datetime) -> str:

    '''
    Render a timezone-aware datetime as fixed-width UTC ISO-8601.

    Fixed width keeps lexicographic order equal to chronological order.

    Args:
        value (datetime): Timezone-aware datetime

    Returns:
        str: ISO-8601 string with microseconds and +00:00 offset
    '''

    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def _serialize_default(obj: Any) -> Any:

    '''
    Serialize Decimal to string for orjson.

    Args:
        obj (Any): Object that orjson cannot serialize natively

    Returns:
        Any: JSON-serializable representation
    '''

    if isinstance(obj, Decimal):
        return str(obj)
    msg = f"Object of type {type(obj).__name__} is not JSON serializable"
    raise TypeError(msg)


def _coerce(value: Any, target: Any) -> Any:

    '''
    Coerce a deserialized JSON value to the expected Python type.

    Args:
        value (Any): Raw value from orjson.loads
        target (Any): Expected Python type from dataclass field annotation

    Returns:
        Any: Value coerced to the target type
    '''

    if value is None:
        return None

    if target is Decimal:
        return Decimal(str(value))

    if target is datetime:
        return datetime.fromisoformat(str(value))

    if isinstance(target, type) and issubclass(target, enum.Enum):
        return target(value)

    return value


def _hydrate_operation(payload: bytes) -> Operation:

    '''
    Reconstruct an Operation from its serialized ledger payload.

    Args:
        payload (bytes): orjson-serialized operation data

    Returns:
        Operation: Hydrated operation dataclass
    '''

    raw: dict[str, Any] = orjson.loads(payload)
    hints = get_type_hints(Operation)
    return Operation(**{k: _coerce(v, hints[k]) for k, v in raw.items()})


def _position_from_row(row: Any) -> Position:

    return Position(
        user_id=row[0],
        asset_id=row[1],
        quantity=row[2],
        average_price=Decimal(row[3]),
        unrealized_pnl=Decimal(row[4]),
    )


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:

    '''
    Map sqlite3 failures onto the persistence error taxonomy.

    Args:
        action (str): Description of the statement for error context

    Raises:
        ConstraintViolation: On integrity errors
        TransientPersistenceFailure: On operational errors such as a locked database
    '''

    try:
        yield
    except sqlite3.IntegrityError as exc:
        msg = f'{action} violated a constraint: {exc}'
        raise ConstraintViolation(msg) from exc
    except sqlite3.OperationalError as exc:
        msg = f'{action} failed: {exc}'
        raise TransientPersistenceFailure(msg) from exc


class LedgerStore:

    '''
    Provide quote, operation, and position storage on one SQLite connection.

    Args:
        conn (aiosqlite.Connection): Caller-owned database connection
    '''

    def __init__(self, conn: aiosqlite.Connection) -> None:

        '''
        Store the caller-owned connection.

        Args:
            conn (aiosqlite.Connection): Caller-owned database connection
        '''

        self._conn = conn

    async def ensure_schema(self) -> None:

        '''
        Create the quotes, operations, and positions tables if they do not exist.

        Returns:
            None
        '''

        with _translate_errors('ensure_schema'):
            for statement in (
                _CREATE_QUOTES,
                _CREATE_OPERATIONS,
                _CREATE_OPERATIONS_INDEX,
                _CREATE_POSITIONS,
            ):
                async with self._conn.execute(statement):
                    pass

    async def exists_quote(self, asset_id: int, observed_at: datetime) -> bool:

        '''
        Check whether a quote with this idempotency key is stored.

        Args:
            asset_id (int): Asset identifier
            observed_at (datetime): Observation time, compared in UTC

        Returns:
            bool: True if the key exists
        '''

        with _translate_errors('exists_quote'):
            async with self._conn.execute(
                _EXISTS_QUOTE, (asset_id, _utc_text(observed_at))
            ) as cursor:
                row = await cursor.fetchone()
        return row is not None

    async def insert_quote(self, quote: Quote) -> None:

        '''
        Insert a quote, storing the price as exact decimal text.

        Args:
            quote (Quote): Quote to persist

        Raises:
            ConstraintViolation: If (asset_id, observed_at) is already stored
        '''

        with _translate_errors(f'insert_quote asset={quote.asset_id}'):
            async with self._conn.execute(
                _INSERT_QUOTE,
                (quote.asset_id, _utc_text(quote.observed_at), str(quote.unit_price)),
            ):
                pass

    async def latest_quote(self, asset_id: int) -> Quote | None:

        '''
        Return the quote with the greatest observed_at for an asset.

        Args:
            asset_id (int): Asset identifier

        Returns:
            Quote | None: Latest quote, or None if the asset has none
        '''

        with _translate_errors('latest_quote'):
            async with self._conn.execute(_LATEST_QUOTE, (asset_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return Quote(
            asset_id=row[0],
            observed_at=datetime.fromisoformat(row[1]),
            unit_price=Decimal(row[2]),
        )

    async def get_position(self, user_id: int, asset_id: int) -> Position | None:

        '''
        Return the stored position for a (user, asset) pair.

        Args:
            user_id (int): Investor identifier
            asset_id (int): Asset identifier

        Returns:
            Position | None: Stored position, or None if the pair never traded
        '''

        with _translate_errors('get_position'):
            async with self._conn.execute(
                _SELECT_POSITION, (user_id, asset_id)
            ) as cursor:
                row = await cursor.fetchone()
        return _position_from_row(row) if row else None

    async def positions_for_asset(self, asset_id: int) -> list[Position]:

        '''
        Return every stored position in an asset.

        Args:
            asset_id (int): Asset identifier

        Returns:
            list[Position]: Positions ordered by user_id
        '''

        with _translate_errors('positions_for_asset'):
            async with self._conn.execute(_SELECT_ASSET_POSITIONS, (asset_id,)) as cursor:
                rows = await cursor.fetchall()
        return [_position_from_row(row) for row in rows]

    async def upsert_position(self, position: Position) -> None:

        '''
        Insert or replace the row for the position's (user, asset) pair.

        Args:
            position (Position): Position to persist
        '''

        with _translate_errors(f'upsert_position user={position.user_id} asset={position.asset_id}'):
            async with self._conn.execute(
                _UPSERT_POSITION,
                (
                    position.user_id,
                    position.asset_id,
                    position.quantity,
                    str(position.average_price),
                    str(position.unrealized_pnl),
                ),
            ):
                pass

    async def append_operation(self, operation: Operation) -> int:

        '''
        Serialize and append an operation to the ledger.

        Args:
            operation (Operation): Operation to persist

        Returns:
            int: Assigned operation_seq
        '''

        payload = orjson.dumps(dataclasses.asdict(operation), default=_serialize_default)
        with _translate_errors(f'append_operation user={operation.user_id}'):
            async with self._conn.execute(
                _INSERT_OPERATION,
                (
                    operation.user_id,
                    operation.asset_id,
                    _utc_text(operation.executed_at),
                    payload,
                ),
            ) as cursor:
                if cursor.lastrowid is None:
                    msg = 'cursor.lastrowid was None after INSERT'
                    raise RuntimeError(msg)
                return cursor.lastrowid

    async def read_operations(self, user_id: int, asset_id: int) -> list[Operation]:

        '''
        Read the ledger for a (user, asset) pair.

        Args:
            user_id (int): Investor identifier
            asset_id (int): Asset identifier

        Returns:
            list[Operation]: Operations ordered by executed_at, then insertion order
        '''

        with _translate_errors('read_operations'):
            async with self._conn.execute(
                _SELECT_OPERATIONS, (user_id, asset_id)
            ) as cursor:
                rows = await cursor.fetchall()
        return [_hydrate_operation(row[0]) for row in rows]


class SqliteSessionFactory:

    '''
    Open one SQLite connection and transaction per unit of work.

    Args:
        database (str): Path of the SQLite database file
        timeout (float): Seconds to wait on a locked database before failing
    '''

    def __init__(self, database: str, *, timeout: float = 5.0) -> None:

        '''
        Store connection settings; the schema is created on first use.

        Args:
            database (str): Path of the SQLite database file
            timeout (float): Seconds to wait on a locked database before failing
        '''

        self._database = database
        self._timeout = timeout
        self._schema_ready = False

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[LedgerStore]:

        '''
        Yield a LedgerStore bound to a fresh connection and write transaction.

        The transaction is opened with BEGIN IMMEDIATE, so the write lock is
        held from the first read and concurrent read-modify-write units run
        one after another. Commits when the block exits cleanly, rolls back
        on any exception including cancellation, and closes the connection
        on every path.

        Yields:
            LedgerStore: Store scoped to this unit of work

        Raises:
            TransientPersistenceFailure: If connecting, taking the write lock,
                or committing fails
        '''

        with _translate_errors(f'connect {self._database}'):
            conn = await aiosqlite.connect(
                self._database,
                timeout=self._timeout,
                isolation_level=None,
            )

        try:
            with _translate_errors(f'begin {self._database}'):
                async with conn.execute('BEGIN IMMEDIATE'):
                    pass

            store = LedgerStore(conn)
            if not self._schema_ready:
                await store.ensure_schema()
                self._schema_ready = True
            yield store
            with _translate_errors('commit'):
                await conn.commit()
        except BaseException:
            try:
                await conn.rollback()
            except sqlite3.Error as exc:
                _log.warning('rollback failed on %s: %s', self._database, exc)
            raise
        finally:
            await conn.close()
