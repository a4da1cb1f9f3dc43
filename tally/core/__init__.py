'''
Represent the position calculator, retry policy, and services of the Tally engine.

Re-exports the pure position functions from the core package.
'''

from __future__ import annotations

from tally.core.position_calculator import (
    apply_operation,
    apply_quote,
    replay_position,
    weighted_average_price,
)

__all__ = [
    'apply_operation',
    'apply_quote',
    'replay_position',
    'weighted_average_price',
]
