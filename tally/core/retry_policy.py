'''
Bounded exponential backoff around one unit of work.

Only TransientPersistenceFailure is retried. Every other exception
propagates on the first attempt. A stop event interrupts the backoff
wait so shutdown is never delayed by a pending retry.
'''

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tally.core.domain.enums import RetryOutcome
from tally.core.domain.errors import ExhaustedRetries, TransientPersistenceFailure

__all__ = ['RetryPolicy', 'RetryResult']

_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_BASE_DELAY = 2.0

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryResult:

    '''
    Represent the result of running a unit of work under a RetryPolicy.

    Args:
        outcome (RetryOutcome): How the run ended
        attempts (int): Attempts started, including the successful one
        value (Any): Return value of the unit of work on SUCCESS, else None
        error (Exception | None): Last transient failure on EXHAUSTED_FAILURE
    '''

    outcome: RetryOutcome
    attempts: int
    value: Any = None
    error: Exception | None = None

    def unwrap(self) -> Any:

        '''
        Return the value of a successful run.

        Returns:
            Any: Value returned by the unit of work

        Raises:
            ExhaustedRetries: If the run did not succeed
        '''

        if self.outcome is RetryOutcome.SUCCESS:
            return self.value

        msg = f'Unit of work ended {self.outcome.value} after {self.attempts} attempt(s)'
        raise ExhaustedRetries(msg, attempts=self.attempts) from self.error


class RetryPolicy:

    '''
    Retry a unit of work on transient persistence failures.

    Args:
        max_attempts (int): Total attempts before giving up, at least 1
        base_delay (float): Seconds multiplied by 2 ** attempt between attempts
        stop_event (asyncio.Event | None): Cooperative shutdown signal
    '''

    def __init__(
        self,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        base_delay: float = _DEFAULT_BASE_DELAY,
        stop_event: asyncio.Event | None = None,
    ) -> None:

        '''
        Validate and store the retry settings.

        Args:
            max_attempts (int): Total attempts before giving up, at least 1
            base_delay (float): Backoff base in seconds, non-negative
            stop_event (asyncio.Event | None): Shutdown signal, a fresh event if omitted

        Raises:
            ValueError: If max_attempts or base_delay is out of range
        '''

        if max_attempts < 1:
            msg = 'RetryPolicy.max_attempts must be at least 1'
            raise ValueError(msg)
        if base_delay < 0:
            msg = 'RetryPolicy.base_delay must be non-negative'
            raise ValueError(msg)

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.stop_event = stop_event if stop_event is not None else asyncio.Event()

    def backoff_delay(self, attempt: int) -> float:

        '''
        Return the wait after the given failed attempt.

        Args:
            attempt (int): Number of the attempt that just failed, starting at 1

        Returns:
            float: Seconds to wait before the next attempt
        '''

        return self.base_delay * 2 ** attempt

    async def execute(self, unit_of_work: Callable[[], Awaitable[Any]]) -> RetryResult:

        '''
        Run the unit of work until it succeeds, attempts run out, or stop is signalled.

        Args:
            unit_of_work (Callable[[], Awaitable[Any]]): Zero-argument coroutine factory,
                called once per attempt

        Returns:
            RetryResult: Outcome, attempt count, and value or last error
        '''

        attempt = 0
        last_error: TransientPersistenceFailure | None = None

        while True:
            if self.stop_event.is_set():
                return RetryResult(RetryOutcome.CANCELLED, attempt, error=last_error)

            attempt += 1
            try:
                value = await unit_of_work()
            except TransientPersistenceFailure as exc:
                last_error = exc
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                _log.warning(
                    'Transient failure (attempt %d/%d), retrying in %.2fs: %s',
                    attempt, self.max_attempts, delay, exc,
                )
                if await self._wait(delay):
                    _log.info('stop signalled during backoff after attempt %d', attempt)
                    return RetryResult(RetryOutcome.CANCELLED, attempt, error=last_error)
                continue

            return RetryResult(RetryOutcome.SUCCESS, attempt, value=value)

        _log.error(
            'All %d attempts exhausted: %s',
            self.max_attempts, last_error,
        )
        return RetryResult(RetryOutcome.EXHAUSTED_FAILURE, attempt, error=last_error)

    async def _wait(self, delay: float) -> bool:

        '''
        Sleep for delay seconds or until the stop event is set.

        Args:
            delay (float): Seconds to wait

        Returns:
            bool: True if the stop event was set before the delay elapsed
        '''

        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
