'''
Domain dataclasses for the Tally position engine.

Re-exports all domain types: enums, dataclasses for quotes,
operations, and positions, and the domain error taxonomy.
'''

from __future__ import annotations

from tally.core.domain.enums import (
    ConsumerState,
    MessageOutcome,
    OperationKind,
    RetryOutcome,
)
from tally.core.domain.errors import (
    ConstraintViolation,
    ExhaustedRetries,
    InsufficientPosition,
    InvalidInput,
    InvalidOperation,
    MalformedMessage,
    PersistenceError,
    TallyError,
    TransientPersistenceFailure,
)
from tally.core.domain.operation import Operation
from tally.core.domain.position import Position
from tally.core.domain.quote import Quote

__all__ = [
    'ConstraintViolation',
    'ConsumerState',
    'ExhaustedRetries',
    'InsufficientPosition',
    'InvalidInput',
    'InvalidOperation',
    'MalformedMessage',
    'MessageOutcome',
    'Operation',
    'OperationKind',
    'PersistenceError',
    'Position',
    'Quote',
    'RetryOutcome',
    'TallyError',
    'TransientPersistenceFailure',
]
