'''
Enumerated types for the Tally position domain.

Defines operation kind, consumer lifecycle state, retry outcome,
and per-message outcome enums used across the recalculator,
retry policy, and stream consumer.
'''

from __future__ import annotations

from enum import Enum


__all__ = ['ConsumerState', 'MessageOutcome', 'OperationKind', 'RetryOutcome']


class OperationKind(Enum):

    '''Buy or sell direction for ledger operations.'''

    BUY = 'BUY'
    SELL = 'SELL'


class ConsumerState(Enum):

    '''
    Stream consumer lifecycle states.

    Terminal state: STOPPED. Every other state loops back
    to RECEIVING once a message has been handled.
    '''

    IDLE = 'IDLE'
    RECEIVING = 'RECEIVING'
    PROCESSING = 'PROCESSING'
    COMMITTING = 'COMMITTING'
    SKIPPING = 'SKIPPING'
    FAILING = 'FAILING'
    STOPPED = 'STOPPED'


class RetryOutcome(Enum):

    '''Result of running one unit of work under the retry policy.'''

    SUCCESS = 'SUCCESS'
    EXHAUSTED_FAILURE = 'EXHAUSTED_FAILURE'
    CANCELLED = 'CANCELLED'


class MessageOutcome(Enum):

    '''
    Observable result of handling one stream message.

    DROPPED_* outcomes are data-loss points: the message is
    not requeued and no dead-letter copy is kept.
    '''

    COMMITTED = 'COMMITTED'
    DUPLICATE = 'DUPLICATE'
    DROPPED_MALFORMED = 'DROPPED_MALFORMED'
    DROPPED_EXHAUSTED = 'DROPPED_EXHAUSTED'
    DROPPED_FATAL = 'DROPPED_FATAL'
    STOPPED = 'STOPPED'
