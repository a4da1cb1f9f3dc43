'''
Runtime configuration for the Tally consumer.

Values come from the process environment, optionally seeded from a
.env file in the working directory.
'''

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv

__all__ = ['TallyConfig']

_LOG_LEVELS = frozenset({'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'})


@dataclass(frozen=True)
class TallyConfig:

    '''
    Consumer settings.

    Args:
        max_attempts (int): Attempts per message before it is dropped
        base_backoff_seconds (float): Backoff base, doubled per attempt
        db_path (str): SQLite database file
        stream_url (str | None): WebSocket endpoint of the quote stream
        log_level (str): Minimum log level
    '''

    max_attempts: int = 3
    base_backoff_seconds: float = 2.0
    db_path: str = 'tally.db'
    stream_url: str | None = None
    log_level: str = 'INFO'

    def __post_init__(self) -> None:

        '''Validate invariants at construction time.'''

        if self.max_attempts < 1:
            msg = 'TallyConfig.max_attempts must be at least 1'
            raise ValueError(msg)
        if self.base_backoff_seconds < 0:
            msg = 'TallyConfig.base_backoff_seconds must be non-negative'
            raise ValueError(msg)
        if not self.db_path:
            msg = 'TallyConfig.db_path must be a non-empty string'
            raise ValueError(msg)
        if self.log_level not in _LOG_LEVELS:
            msg = f'TallyConfig.log_level must be one of {sorted(_LOG_LEVELS)}'
            raise ValueError(msg)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TallyConfig:

        '''
        Build a config from environment variables.

        Reads TALLY_MAX_ATTEMPTS, TALLY_BASE_BACKOFF_SECONDS, TALLY_DB_PATH,
        TALLY_STREAM_URL, and TALLY_LOG_LEVEL. Unset variables keep defaults.

        Args:
            environ (Mapping[str, str] | None): Source mapping; when None,
                a .env file is loaded and os.environ is used

        Returns:
            TallyConfig: Validated configuration

        Raises:
            ValueError: If a variable cannot be parsed or is out of range
        '''

        if environ is None:
            load_dotenv()
            environ = os.environ

        defaults = cls()
        try:
            max_attempts = int(environ.get('TALLY_MAX_ATTEMPTS', defaults.max_attempts))
            base_backoff = float(
                environ.get('TALLY_BASE_BACKOFF_SECONDS', defaults.base_backoff_seconds)
            )
        except ValueError as exc:
            msg = f'Invalid numeric Tally setting: {exc}'
            raise ValueError(msg) from None

        return cls(
            max_attempts=max_attempts,
            base_backoff_seconds=base_backoff,
            db_path=environ.get('TALLY_DB_PATH', defaults.db_path),
            stream_url=environ.get('TALLY_STREAM_URL') or None,
            log_level=environ.get('TALLY_LOG_LEVEL', defaults.log_level).upper(),
        )
