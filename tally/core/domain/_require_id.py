'''
Validate that an identifier field is a positive integer.

Shared validation helper used across all domain dataclasses
to enforce identifier invariants at construction time.
'''

from __future__ import annotations

__all__ = ['_require_id', '_require_aware']


def _require_id(cls: str, field: str, value: int) -> None:

    '''
    Validate that an identifier field is a positive integer.

    Args:
        cls (str): Class name for error context.
        field (str): Field name for error context.
        value (int): Value to validate.
    '''

    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        msg = f'{cls}.{field} must be a positive integer'
        raise ValueError(msg)


def _require_aware(cls: str, field: str, value: object) -> None:

    '''
    Validate that a datetime field is timezone-aware.

    Args:
        cls (str): Class name for error context.
        field (str): Field name for error context.
        value (object): Value to validate.
    '''

    tzinfo = getattr(value, 'tzinfo', None)
    if tzinfo is None or value.utcoffset() is None:  # type: ignore[attr-defined]
        msg = f'{cls}.{field} must be timezone-aware'
        raise ValueError(msg)
