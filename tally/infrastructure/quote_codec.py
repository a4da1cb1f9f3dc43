'''
Decode and encode quote messages carried on the stream.

A message is a JSON object with asset_id, unit_price, and observed_at.
The camelCase spellings assetId, unitPrice, and observedAt are accepted
too. unit_price travels as a string so no precision is lost.
'''

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation as DecimalError
from typing import Any

import orjson

from tally.core.domain.errors import MalformedMessage
from tally.core.domain.quote import Quote

__all__ = ['decode_quote', 'encode_quote']

_FIELDS: dict[str, tuple[str, ...]] = {
    'asset_id': ('asset_id', 'assetId'),
    'unit_price': ('unit_price', 'unitPrice'),
    'observed_at': ('observed_at', 'observedAt'),
}


def _field(raw: dict[str, Any], name: str) -> Any:

    for alias in _FIELDS[name]:
        if alias in raw:
            return raw[alias]
    msg = f'Quote message is missing {name!r}'
    raise MalformedMessage(msg)


def _parse_asset_id(value: Any) -> int:

    if isinstance(value, bool):
        msg = 'asset_id must be an integer'
        raise MalformedMessage(msg)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    msg = f'asset_id must be an integer, got {value!r}'
    raise MalformedMessage(msg)


def _parse_price(value: Any) -> Decimal:

    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        msg = f'unit_price must be a number or numeric string, got {value!r}'
        raise MalformedMessage(msg)
    try:
        return Decimal(str(value))
    except DecimalError:
        msg = f'unit_price is not a decimal: {value!r}'
        raise MalformedMessage(msg) from None


def _parse_timestamp(value: Any) -> datetime:

    if not isinstance(value, str):
        msg = f'observed_at must be an ISO-8601 string, got {value!r}'
        raise MalformedMessage(msg)
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        msg = f'observed_at is not ISO-8601: {value!r}'
        raise MalformedMessage(msg) from None


def decode_quote(raw: bytes | str) -> Quote:

    '''
    Deserialize a stream message into a Quote.

    Args:
        raw (bytes | str): Raw message body

    Returns:
        Quote: Validated quote

    Raises:
        MalformedMessage: If the body is not a JSON object or any field is
            missing or invalid
    '''

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        msg = f'Quote message is not valid JSON: {exc}'
        raise MalformedMessage(msg) from None

    if not isinstance(data, dict):
        msg = f'Quote message must be a JSON object, got {type(data).__name__}'
        raise MalformedMessage(msg)

    asset_id = _parse_asset_id(_field(data, 'asset_id'))
    unit_price = _parse_price(_field(data, 'unit_price'))
    observed_at = _parse_timestamp(_field(data, 'observed_at'))

    try:
        return Quote(asset_id=asset_id, unit_price=unit_price, observed_at=observed_at)
    except ValueError as exc:
        raise MalformedMessage(str(exc)) from None


def encode_quote(quote: Quote) -> bytes:

    '''
    Serialize a Quote into a stream message body.

    Args:
        quote (Quote): Quote to serialize

    Returns:
        bytes: orjson-encoded JSON object
    '''

    return orjson.dumps({
        'asset_id': quote.asset_id,
        'unit_price': str(quote.unit_price),
        'observed_at': quote.observed_at.isoformat(),
    })
