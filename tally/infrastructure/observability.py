'''
Structured logging for the Tally consumer.

Both structlog loggers and stdlib logging loggers render one orjson
JSON object per line on stdout, carrying an ISO 8601 UTC timestamp and
any fields bound with bind_context() for the current task. Decimal
values render as strings.
'''

import logging
import sys
from typing import Any

import orjson
import structlog

__all__ = ['bind_context', 'clear_context', 'configure_logging', 'get_logger']

_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


def _render_text(*args: Any, **kwargs: Any) -> str:

    return orjson.dumps(*args, **kwargs).decode()


def _resolve_level(log_level: str | int) -> int:

    '''
    Translate a level name or number into a logging level.

    Args:
        log_level (str | int): Level name, case-insensitive, or numeric level

    Returns:
        int: Numeric logging level

    Raises:
        ValueError: If the name is not a standard level
    '''

    if isinstance(log_level, int):
        return log_level

    try:
        return _LEVELS[log_level.upper()]
    except KeyError:
        msg = f'Unknown log level {log_level!r}'
        raise ValueError(msg) from None


def _add_stdlib_logger_name(logger: Any, method_name: str, event_dict: Any) -> Any:

    '''Tag a stdlib record with its logger under the key get_logger() uses.'''

    record = event_dict.get('_record')
    if record is not None:
        event_dict['logger_name'] = record.name
    return event_dict


def _base_chain() -> list[Any]:

    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(log_level: str | int = 'INFO') -> None:

    '''
    Route structlog and stdlib logging to JSON lines on stdout.

    Safe to call again; the root handler is replaced, not duplicated.
    Loggers from get_logger() are not cached, so module-level loggers
    created before this call still pick up the new configuration.

    Args:
        log_level (str | int): Minimum level, e.g. 'DEBUG' or logging.INFO

    Raises:
        ValueError: If log_level names no standard level
    '''

    level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            *_base_chain(),
            structlog.processors.JSONRenderer(serializer=orjson.dumps, default=str),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.BytesLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    stdlib_handler = logging.StreamHandler(sys.stdout)
    stdlib_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(serializer=_render_text, default=str),
        ],
        foreign_pre_chain=[_add_stdlib_logger_name, *_base_chain()],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stdlib_handler)
    root.setLevel(level)


def get_logger(name: str) -> Any:

    '''
    Return a lazy structlog logger tagged with the emitting module.

    The logger resolves configuration on first use, so module-level
    loggers pick up a later configure_logging() call.

    Args:
        name (str): Logger name, usually __name__

    Returns:
        Any: Lazy structlog logger proxy
    '''

    return structlog.get_logger(logger_name=name)


def bind_context(**fields: Any) -> None:

    '''
    Bind fields to every log line emitted from the current task.

    Args:
        **fields (Any): Key/value pairs such as partition or asset_id
    '''

    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:

    '''Remove all fields bound with bind_context for the current task.'''

    structlog.contextvars.clear_contextvars()
