'''
Quote dataclass representing an observed market price for an asset.

Quotes are immutable facts: once observed, no field changes. The key
property supports idempotent ingestion by (asset_id, observed_at).
'''

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from tally.core.domain._require_id import _require_aware, _require_id


__all__ = ['Quote']

_ZERO = Decimal(0)


@dataclass(frozen=True)
class Quote:

    '''
    A market quote for one asset at one point in time.

    Args:
        asset_id (int): Asset the price was observed for.
        unit_price (Decimal): Observed unit price, must be positive.
        observed_at (datetime): Observation time, must be timezone-aware.
    '''

    asset_id: int
    unit_price: Decimal
    observed_at: datetime

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        _require_id('Quote', 'asset_id', self.asset_id)
        _require_aware('Quote', 'observed_at', self.observed_at)

        if not isinstance(self.unit_price, Decimal) or not self.unit_price.is_finite():
            msg = 'Quote.unit_price must be a finite Decimal'
            raise ValueError(msg)
        if self.unit_price <= _ZERO:
            msg = 'Quote.unit_price must be positive'
            raise ValueError(msg)

    @property
    def key(self) -> tuple[int, datetime]:

        '''
        Return the idempotency key for this quote.

        The observation time is normalised to UTC so the same instant
        expressed in different offsets yields the same key.
        '''

        return (self.asset_id, self.observed_at.astimezone(timezone.utc))
