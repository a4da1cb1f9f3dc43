'''
Storage protocols for quotes, operations, and positions.

Define the storage-agnostic interface consumed by the idempotency guard,
the stream consumer, and the trade service. Implementations translate
backend failures into TransientPersistenceFailure or ConstraintViolation
from tally.core.domain.errors so callers can decide whether to retry.
'''

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote


__all__ = ['LedgerSessions', 'QuoteStore']


@runtime_checkable
class QuoteStore(Protocol):

    '''
    Storage interface for one unit of work.

    Every method runs inside the caller's transaction. Implementations
    raise TransientPersistenceFailure or ConstraintViolation only.
    '''

    async def exists_quote(self, asset_id: int, observed_at: datetime) -> bool:

        '''
        Return True if a quote with this idempotency key is stored.

        Args:
            asset_id (int): Asset identifier
            observed_at (datetime): Observation time, timezone-aware

        Returns:
            bool: Whether the quote already exists
        '''

        ...

    async def insert_quote(self, quote: Quote) -> None:

        '''
        Insert a quote.

        Args:
            quote (Quote): Quote to persist

        Raises:
            ConstraintViolation: If the idempotency key already exists
        '''

        ...

    async def latest_quote(self, asset_id: int) -> Quote | None:

        '''
        Return the quote with the greatest observed_at for an asset.

        Args:
            asset_id (int): Asset identifier

        Returns:
            Quote | None: Latest quote, or None if the asset has none
        '''

        ...

    async def get_position(self, user_id: int, asset_id: int) -> Position | None:

        '''
        Return the stored position for a (user, asset) pair.

        Args:
            user_id (int): Investor identifier
            asset_id (int): Asset identifier

        Returns:
            Position | None: Stored position, or None if the pair never traded
        '''

        ...

    async def positions_for_asset(self, asset_id: int) -> list[Position]:

        '''
        Return every stored position in an asset.

        Args:
            asset_id (int): Asset identifier

        Returns:
            list[Position]: Positions ordered by user_id
        '''

        ...

    async def upsert_position(self, position: Position) -> None:

        '''
        Insert or replace the position row for its (user, asset) pair.

        Args:
            position (Position): Position to persist
        '''

        ...

    async def append_operation(self, operation: Operation) -> int:

        '''
        Append an operation to the ledger.

        Args:
            operation (Operation): Operation to persist

        Returns:
            int: Assigned ledger sequence number
        '''

        ...

    async def read_operations(self, user_id: int, asset_id: int) -> list[Operation]:

        '''
        Return the ledger for a (user, asset) pair ordered by executed_at.

        Args:
            user_id (int): Investor identifier
            asset_id (int): Asset identifier

        Returns:
            list[Operation]: Operations in execution order
        '''

        ...


class LedgerSessions(Protocol):

    '''
    Factory of scoped store handles, one per unit of work.

    Entering the returned context opens a transaction; a clean exit
    commits, an exception or cancellation rolls back, and the handle
    is released on every path.
    '''

    def __call__(self) -> AbstractAsyncContextManager[QuoteStore]:

        '''
        Open a scoped store handle.

        Returns:
            AbstractAsyncContextManager[QuoteStore]: Context yielding the store
        '''

        ...
