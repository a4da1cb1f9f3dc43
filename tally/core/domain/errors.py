'''
Domain error taxonomy for the Tally position engine.

Business-rule violations subclass ValueError so that dataclass
validation and recalculator checks raise the same types. Storage
failures derive from PersistenceError and are the only errors the
retry policy treats as retryable.
'''

from __future__ import annotations

__all__ = [
    'ConstraintViolation',
    'ExhaustedRetries',
    'InsufficientPosition',
    'InvalidInput',
    'InvalidOperation',
    'MalformedMessage',
    'PersistenceError',
    'TallyError',
    'TransientPersistenceFailure',
]


class TallyError(Exception):

    '''
    Base exception for all Tally failures.

    Args:
        message (str): Human-readable error description
    '''

    def __init__(self, message: str) -> None:

        '''
        Store the error message.

        Args:
            message (str): Human-readable error description
        '''

        self.message = message
        super().__init__(message)


class InvalidOperation(TallyError, ValueError):

    '''Raised when an operation has a non-positive quantity or price, or a negative fee.'''


class InsufficientPosition(TallyError, ValueError):

    '''
    Raised when a sell would drive position quantity negative.

    Args:
        message (str): Human-readable error description
        held (int): Quantity currently held
        requested (int): Quantity the sell tried to remove
    '''

    def __init__(self, message: str, held: int, requested: int) -> None:

        '''
        Store the held and requested quantities.

        Args:
            message (str): Human-readable error description
            held (int): Quantity currently held
            requested (int): Quantity the sell tried to remove
        '''

        self.held = held
        self.requested = requested
        super().__init__(message)


class InvalidInput(TallyError, ValueError):

    '''Raised when a batch of buy lots is empty or holds a non-positive value.'''


class MalformedMessage(TallyError, ValueError):

    '''Raised when a stream message cannot be decoded into a Quote.'''


class ExhaustedRetries(TallyError):

    '''
    Raised by callers that want retry exhaustion as an exception.

    Args:
        message (str): Human-readable error description
        attempts (int): Number of attempts made
    '''

    def __init__(self, message: str, attempts: int) -> None:

        '''
        Store the number of attempts made.

        Args:
            message (str): Human-readable error description
            attempts (int): Number of attempts made
        '''

        self.attempts = attempts
        super().__init__(message)


class PersistenceError(TallyError):

    '''Base exception for storage failures raised by QuoteStore implementations.'''


class TransientPersistenceFailure(PersistenceError):

    '''Raised on connectivity or lock contention; safe to retry.'''


class ConstraintViolation(PersistenceError):

    '''Raised when a write breaks a uniqueness or integrity constraint; never retried.'''
