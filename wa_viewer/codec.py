"""
Conversation identifier codec.

A conversation is addressed by the (contact, source_file) pair. The pair is
serialized as a small JSON object and then URL-safe base64 encoded without
padding, so the identifier is opaque, fits in a URL path segment and
round-trips any UTF-8 name, delimiters included.
"""

import base64
import binascii
import json
import re
from typing import Optional, Tuple

from wa_viewer.errors import DecodeError

_CONTACT_KEY = "c"
_SOURCE_KEY = "s"

_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")


def encode_conversation_id(contact: str, source_file: Optional[str]) -> str:
    """
    Encode a (contact, source_file) pair into an opaque identifier.

    Args:
        contact: Contact name as stored in the export
        source_file: Source file label, may be None

    Returns:
        URL-safe identifier string
    """
    if not isinstance(contact, str):
        raise TypeError("contact must be a string")
    if source_file is not None and not isinstance(source_file, str):
        raise TypeError("source_file must be a string or None")

    payload = json.dumps(
        {_CONTACT_KEY: contact, _SOURCE_KEY: source_file},
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def decode_conversation_id(conversation_id: str) -> Tuple[str, Optional[str]]:
    """
    Decode an identifier produced by encode_conversation_id.

    Raises:
        DecodeError: if the identifier is malformed in any way
    """
    if not isinstance(conversation_id, str) or not _ALPHABET.match(conversation_id):
        raise DecodeError("Conversation id contains invalid characters")

    padded = conversation_id + "=" * (-len(conversation_id) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Conversation id is not decodable: {e}") from e

    if not isinstance(payload, dict) or set(payload) != {_CONTACT_KEY, _SOURCE_KEY}:
        raise DecodeError("Conversation id has an unexpected structure")

    contact = payload[_CONTACT_KEY]
    source_file = payload[_SOURCE_KEY]
    if not isinstance(contact, str):
        raise DecodeError("Conversation id contact must be a string")
    if source_file is not None and not isinstance(source_file, str):
        raise DecodeError("Conversation id source_file must be a string or null")

    return contact, source_file
