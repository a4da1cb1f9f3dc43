'''
Record executed operations and keep their positions current.

Each call is one read-modify-write inside a scoped transaction: load
the stored position, fold the operation through the calculator, re-mark
at the latest quote, and persist. Business-rule violations propagate to
the caller with nothing written.
'''

from __future__ import annotations

import logging

from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.persistence import LedgerSessions
from tally.core.position_calculator import apply_operation, apply_quote, replay_position
from tally.core.retry_policy import RetryPolicy

__all__ = ['TradeService']

_log = logging.getLogger(__name__)


class TradeService:

    '''
    Apply operations to positions through the ledger store.

    Args:
        sessions (LedgerSessions): Factory of scoped store handles
        policy (RetryPolicy | None): Retry policy for transient failures,
            defaults to a single attempt
    '''

    def __init__(self, sessions: LedgerSessions, policy: RetryPolicy | None = None) -> None:

        '''
        Store the session factory and retry policy.

        Args:
            sessions (LedgerSessions): Factory of scoped store handles
            policy (RetryPolicy | None): Retry policy, defaults to a single attempt
        '''

        self._sessions = sessions
        self._policy = policy if policy is not None else RetryPolicy(max_attempts=1)

    async def record_operation(self, operation: Operation) -> Position:

        '''
        Append an operation to the ledger and update its position.

        Args:
            operation (Operation): Executed buy or sell

        Returns:
            Position: Stored position after the operation

        Raises:
            InvalidOperation: If the operation is invalid for the position
            InsufficientPosition: If a sell exceeds the quantity held
            ExhaustedRetries: If the store kept failing transiently
        '''

        result = await self._policy.execute(lambda: self._record(operation))
        return result.unwrap()

    async def _record(self, operation: Operation) -> Position:

        async with self._sessions() as store:
            current = await store.get_position(operation.user_id, operation.asset_id)
            if current is None:
                current = Position.empty(operation.user_id, operation.asset_id)

            position = apply_operation(current, operation)
            latest = await store.latest_quote(operation.asset_id)
            if latest is not None:
                position = apply_quote(position, latest)

            await store.append_operation(operation)
            await store.upsert_position(position)

        _log.info(
            'operation recorded: user=%s asset=%s kind=%s quantity=%d average_price=%s',
            operation.user_id,
            operation.asset_id,
            operation.kind.value,
            position.quantity,
            position.average_price,
        )
        return position

    async def rebuild_position(self, user_id: int, asset_id: int) -> Position:

        '''
        Replay the ledger for a pair and overwrite its stored position.

        Args:
            user_id (int): Investor identifier
            asset_id (int): Asset identifier

        Returns:
            Position: Reconstructed position

        Raises:
            ExhaustedRetries: If the store kept failing transiently
        '''

        result = await self._policy.execute(lambda: self._rebuild(user_id, asset_id))
        return result.unwrap()

    async def _rebuild(self, user_id: int, asset_id: int) -> Position:

        async with self._sessions() as store:
            operations = await store.read_operations(user_id, asset_id)
            latest = await store.latest_quote(asset_id)
            position = replay_position(user_id, asset_id, operations, latest)
            await store.upsert_position(position)

        _log.info(
            'position rebuilt: user=%s asset=%s operations=%d quantity=%d',
            user_id,
            asset_id,
            len(operations),
            position.quantity,
        )
        return position
