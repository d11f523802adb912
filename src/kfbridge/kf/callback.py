"""Callback body and plaintext parsing.

The remote server may express both the POST body and the decrypted
notification as XML (tags with or without CDATA) or JSON. Both forms are
accepted everywhere.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

_CDATA_TAG = re.compile(r"<(\w+)><!\[CDATA\[([\s\S]*?)\]\]></\1>")
_PLAIN_TAG = re.compile(r"<(\w+)>([^<]+)</\1>")


@dataclass(frozen=True)
class CallbackEnvelope:
    """Fields from the POST body needed for signature check and decryption."""

    encrypt: str
    signature: str
    timestamp: str
    nonce: str


@dataclass(frozen=True)
class CallbackNotice:
    """Decrypted notification. Carries no message content."""

    token: str | None
    open_kfid: str | None
    to_user_name: str | None = None
    create_time: str | None = None


def is_xml(raw: str) -> bool:
    """Return True if the text looks like an XML document."""
    return raw.lstrip().startswith("<")


def parse_xml_fields(raw: str) -> dict[str, str]:
    """Extract flat tag -> text pairs. CDATA values win over plain values."""
    result: dict[str, str] = {}
    for name, value in _CDATA_TAG.findall(raw):
        result[name] = value
    for name, value in _PLAIN_TAG.findall(raw):
        if not result.get(name):
            result[name] = value
    return result


def parse_callback_body(
    raw: str,
    *,
    signature: str,
    timestamp: str,
    nonce: str,
) -> CallbackEnvelope:
    """Parse the POST body and merge it with the query-string fields.

    XML bodies may carry MsgSignature, TimeStamp and Nonce that override the
    query values.

    Raises:
        ValidationError: If the body is not parseable or has no encrypt field.
    """
    if is_xml(raw):
        fields = parse_xml_fields(raw)
        encrypt = fields.get("Encrypt", "")
        signature = fields.get("MsgSignature") or signature
        timestamp = fields.get("TimeStamp") or timestamp
        nonce = fields.get("Nonce") or nonce
    else:
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError("invalid payload format") from e
        if not isinstance(record, dict):
            raise ValidationError("invalid payload format")
        value = record.get("encrypt", record.get("Encrypt"))
        encrypt = str(value) if value is not None else ""

    if not encrypt:
        raise ValidationError("missing encrypt")

    return CallbackEnvelope(
        encrypt=encrypt,
        signature=signature,
        timestamp=timestamp,
        nonce=nonce,
    )


def _first(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is not None and str(value):
            return str(value)
    return None


def parse_callback_plaintext(plaintext: str) -> CallbackNotice:
    """Extract the delivery token and channel-instance id from a notification.

    Empty values are returned as None.

    Raises:
        ValidationError: If the plaintext is neither XML nor a JSON object.
    """
    if is_xml(plaintext):
        data: dict[str, Any] = parse_xml_fields(plaintext)
    else:
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise ValidationError("callback plaintext is neither XML nor JSON") from e
        if not isinstance(data, dict):
            raise ValidationError("callback plaintext is neither XML nor JSON")

    return CallbackNotice(
        token=_first(data, "Token", "token"),
        open_kfid=_first(data, "OpenKfId", "open_kfid"),
        to_user_name=_first(data, "ToUserName", "to_user_name"),
        create_time=_first(data, "CreateTime", "create_time"),
    )
