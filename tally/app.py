'''
Wire configuration, storage, stream source, and consumer together.
'''

from __future__ import annotations

import asyncio
from collections import Counter

from tally.config import TallyConfig
from tally.core.domain.enums import MessageOutcome
from tally.core.retry_policy import RetryPolicy
from tally.infrastructure.ledger_store import SqliteSessionFactory
from tally.infrastructure.observability import configure_logging
from tally.infrastructure.quote_source import WebSocketQuoteSource
from tally.infrastructure.stream_consumer import QuoteConsumer

__all__ = ['build_consumer', 'serve']


def build_consumer(
    config: TallyConfig,
    stop_event: asyncio.Event | None = None,
) -> QuoteConsumer:

    '''
    Build a QuoteConsumer from configuration.

    Args:
        config (TallyConfig): Validated settings
        stop_event (asyncio.Event | None): Shutdown signal shared with the caller

    Returns:
        QuoteConsumer: Consumer bound to the configured database
    '''

    policy = RetryPolicy(
        max_attempts=config.max_attempts,
        base_delay=config.base_backoff_seconds,
        stop_event=stop_event,
    )
    return QuoteConsumer(SqliteSessionFactory(config.db_path), policy)


async def serve(
    config: TallyConfig,
    stop_event: asyncio.Event | None = None,
) -> Counter[MessageOutcome]:

    '''
    Consume the configured WebSocket stream until it closes or stop is signalled.

    Args:
        config (TallyConfig): Validated settings; stream_url is required
        stop_event (asyncio.Event | None): Shutdown signal

    Returns:
        Counter[MessageOutcome]: Count of each message outcome

    Raises:
        ValueError: If config.stream_url is not set
    '''

    if not config.stream_url:
        msg = 'TallyConfig.stream_url must be set to serve'
        raise ValueError(msg)

    configure_logging(config.log_level)
    consumer = build_consumer(config, stop_event)

    async with WebSocketQuoteSource(config.stream_url) as source:
        return await consumer.run(source.messages())
