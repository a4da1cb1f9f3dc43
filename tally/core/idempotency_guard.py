'''
Suppress duplicate quote writes under at-least-once delivery.

The guard reads through the same store handle, and therefore the same
transaction, as the write that follows it. Within a partition messages
are handled strictly in sequence, so check-then-write needs no lock.
'''

from __future__ import annotations

import logging

from tally.core.domain.quote import Quote
from tally.core.persistence import QuoteStore

__all__ = ['IdempotencyGuard']

_log = logging.getLogger(__name__)


class IdempotencyGuard:

    '''Decide whether a quote is new by its (asset_id, observed_at) key.'''

    async def should_persist(self, store: QuoteStore, quote: Quote) -> bool:

        '''
        Return True if no quote with the same key is stored yet.

        Args:
            store (QuoteStore): Store scoped to the current unit of work
            quote (Quote): Candidate quote

        Returns:
            bool: False when the quote is a duplicate
        '''

        asset_id, observed_at = quote.key
        if await store.exists_quote(asset_id, observed_at):
            _log.debug(
                'duplicate quote suppressed: asset=%s observed_at=%s',
                asset_id,
                observed_at.isoformat(),
            )
            return False

        return True
