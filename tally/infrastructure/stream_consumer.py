'''
Consume quote messages from one stream partition and revalue positions.

Each message is decoded, checked against the idempotency guard, stored,
and folded into every position held in the quoted asset, all inside one
scoped transaction per attempt. Transient persistence failures are
retried under RetryPolicy. No single message can stop the loop; only
the stop event or the end of the stream does.
'''

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterable, AsyncIterator, Mapping

from tally.core.domain.enums import ConsumerState, MessageOutcome, RetryOutcome
from tally.core.domain.errors import (
    ConstraintViolation,
    MalformedMessage,
    TransientPersistenceFailure,
)
from tally.core.domain.quote import Quote
from tally.core.idempotency_guard import IdempotencyGuard
from tally.core.persistence import LedgerSessions
from tally.core.position_calculator import apply_quote
from tally.core.retry_policy import RetryPolicy
from tally.infrastructure.observability import bind_context, clear_context, get_logger
from tally.infrastructure.quote_codec import decode_quote

__all__ = ['QuoteConsumer', 'run_partitions']

_log = get_logger(__name__)


class QuoteConsumer:

    '''
    Sequential quote consumer for a single stream partition.

    Args:
        sessions (LedgerSessions): Factory of scoped store handles
        policy (RetryPolicy | None): Retry policy; its stop event is the
            consumer's shutdown signal. Defaults to RetryPolicy()
        guard (IdempotencyGuard | None): Duplicate check, defaults to IdempotencyGuard()
        partition (str): Partition label bound to every log line
    '''

    def __init__(
        self,
        sessions: LedgerSessions,
        policy: RetryPolicy | None = None,
        *,
        guard: IdempotencyGuard | None = None,
        partition: str = '0',
    ) -> None:

        '''
        Wire the consumer to its store and retry policy.

        Args:
            sessions (LedgerSessions): Factory of scoped store handles
            policy (RetryPolicy | None): Retry policy and shutdown signal
            guard (IdempotencyGuard | None): Duplicate check
            partition (str): Partition label for log context
        '''

        self._sessions = sessions
        self.policy = policy if policy is not None else RetryPolicy()
        self.guard = guard if guard is not None else IdempotencyGuard()
        self.partition = partition
        self.state = ConsumerState.IDLE
        self.stats: Counter[MessageOutcome] = Counter()

    @property
    def stop_event(self) -> asyncio.Event:

        '''Return the event that stops receive and backoff waits.'''

        return self.policy.stop_event

    def stop(self) -> None:

        '''Signal the loop to stop after the message in flight.'''

        self.stop_event.set()

    async def run(self, messages: AsyncIterable[bytes]) -> Counter[MessageOutcome]:

        '''
        Process messages until the stream ends or stop is signalled.

        Args:
            messages (AsyncIterable[bytes]): Raw message bodies for this partition

        Returns:
            Counter[MessageOutcome]: Count of each message outcome
        '''

        bind_context(partition=self.partition)
        iterator = aiter(messages)
        _log.info('consumer_started')

        try:
            while True:
                self.state = ConsumerState.RECEIVING
                raw = await self._receive(iterator)
                if raw is None:
                    break

                outcome = await self.process(raw)
                if outcome is MessageOutcome.STOPPED:
                    break
        finally:
            self.state = ConsumerState.STOPPED
            _log.info('consumer_stopped', **{o.value.lower(): n for o, n in self.stats.items()})
            clear_context()

        return self.stats

    async def _receive(self, iterator: AsyncIterator[bytes]) -> bytes | None:

        '''
        Wait for the next message or the stop event, whichever comes first.

        Args:
            iterator (AsyncIterator[bytes]): Partition message iterator

        Returns:
            bytes | None: Next message, or None when stopped or exhausted
        '''

        if self.stop_event.is_set():
            return None

        next_task = asyncio.ensure_future(anext(iterator))
        stop_task = asyncio.ensure_future(self.stop_event.wait())

        try:
            await asyncio.wait(
                {next_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in (next_task, stop_task) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        if next_task.cancelled():
            return None

        try:
            return next_task.result()
        except StopAsyncIteration:
            _log.info('stream_exhausted')
            return None

    async def process(self, raw: bytes) -> MessageOutcome:

        '''
        Handle one raw message end to end.

        Args:
            raw (bytes): Raw message body

        Returns:
            MessageOutcome: What happened to the message
        '''

        self.state = ConsumerState.PROCESSING

        try:
            quote = decode_quote(raw)
        except MalformedMessage as exc:
            self.state = ConsumerState.SKIPPING
            _log.warning('quote_dropped', reason='malformed', error=exc.message)
            return self._record(MessageOutcome.DROPPED_MALFORMED)

        try:
            result = await self.policy.execute(lambda: self._commit(quote))
        except Exception as exc:
            self.state = ConsumerState.SKIPPING
            _log.exception(
                'quote_dropped',
                reason='fatal',
                asset_id=quote.asset_id,
                observed_at=quote.observed_at.isoformat(),
                error=str(exc),
            )
            return self._record(MessageOutcome.DROPPED_FATAL)

        if result.outcome is RetryOutcome.CANCELLED:
            self.state = ConsumerState.STOPPED
            _log.info('quote_abandoned', asset_id=quote.asset_id, attempts=result.attempts)
            return self._record(MessageOutcome.STOPPED)

        if result.outcome is RetryOutcome.EXHAUSTED_FAILURE:
            self.state = ConsumerState.SKIPPING
            _log.error(
                'quote_dropped',
                reason='retries_exhausted',
                asset_id=quote.asset_id,
                observed_at=quote.observed_at.isoformat(),
                attempts=result.attempts,
                error=str(result.error),
            )
            return self._record(MessageOutcome.DROPPED_EXHAUSTED)

        if not result.value:
            self.state = ConsumerState.SKIPPING
            _log.debug('quote_duplicate', asset_id=quote.asset_id)
            return self._record(MessageOutcome.DUPLICATE)

        self.state = ConsumerState.COMMITTING
        return self._record(MessageOutcome.COMMITTED)

    async def _commit(self, quote: Quote) -> bool:

        '''
        Store the quote and revalue positions in one scoped transaction.

        Args:
            quote (Quote): Decoded quote

        Returns:
            bool: True if stored, False if it was a duplicate

        Raises:
            TransientPersistenceFailure: If the store fails transiently
            ConstraintViolation: If the insert fails for a reason other than a duplicate
        '''

        try:
            async with self._sessions() as store:
                if not await self.guard.should_persist(store, quote):
                    return False

                try:
                    await store.insert_quote(quote)
                except ConstraintViolation:
                    if not await self.guard.should_persist(store, quote):
                        return False
                    raise

                self.state = ConsumerState.COMMITTING
                latest = await store.latest_quote(quote.asset_id) or quote
                holders = await store.positions_for_asset(quote.asset_id)
                for position in holders:
                    await store.upsert_position(apply_quote(position, latest))

                _log.debug(
                    'quote_committed',
                    asset_id=quote.asset_id,
                    unit_price=str(latest.unit_price),
                    positions=len(holders),
                )
                return True
        except TransientPersistenceFailure:
            self.state = ConsumerState.FAILING
            raise

    def _record(self, outcome: MessageOutcome) -> MessageOutcome:

        self.stats[outcome] += 1
        return outcome


async def run_partitions(
    sessions: LedgerSessions,
    streams: Mapping[str, AsyncIterable[bytes]],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    stop_event: asyncio.Event | None = None,
) -> dict[str, Counter[MessageOutcome]]:

    '''
    Run one sequential consumer per partition concurrently.

    Quotes for a given asset must be routed to a single partition;
    that routing is the caller's responsibility. If any partition fails
    or the call is cancelled, the shared stop event is set and every
    other loop is awaited before the error propagates.

    Args:
        sessions (LedgerSessions): Factory of scoped store handles
        streams (Mapping[str, AsyncIterable[bytes]]): Message stream per partition label
        max_attempts (int): Attempts per message before it is dropped
        base_delay (float): Backoff base in seconds
        stop_event (asyncio.Event | None): Shared shutdown signal

    Returns:
        dict[str, Counter[MessageOutcome]]: Outcome counts per partition
    '''

    stop_event = stop_event if stop_event is not None else asyncio.Event()
    consumers = {
        partition: QuoteConsumer(
            sessions,
            RetryPolicy(max_attempts, base_delay, stop_event),
            partition=partition,
        )
        for partition in streams
    }

    tasks = {
        partition: asyncio.ensure_future(consumers[partition].run(stream))
        for partition, stream in streams.items()
    }

    try:
        await asyncio.gather(*tasks.values())
    except BaseException:
        stop_event.set()
        await asyncio.wait(tasks.values())
        for partition, task in tasks.items():
            if not task.cancelled() and task.exception() is not None:
                _log.error(
                    'partition_failed',
                    partition=partition,
                    error=repr(task.exception()),
                )
        raise

    return {partition: task.result() for partition, task in tasks.items()}
