"""Static/branch id generation and the opaque node id codec."""

from __future__ import annotations

import secrets

# purpose: mint logical-entity identifiers and translate row ids to external ids
# inputs: short kind tags (tool, tbrch, coll, ...) and integer row ids
# outputs: prefixed opaque strings safe to hand to API clients
# status: stable

# Order matters: ids already handed out decode against this exact charset.
CHARSET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
_CHAR_VALUES = {char: index for index, char in enumerate(CHARSET)}
_STATIC_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
_STATIC_ID_LENGTH = 9
# pads encoded ids so small row ids still look opaque
_ID_MULTIPLIER = 100000
# row ids are signed 64-bit integers in every supported database
MAX_ROW_ID = 2**63 - 1


class InvalidIdError(ValueError):
    """Raised when an opaque id cannot be decoded."""


def generate_static_id(prefix: str) -> str:
    """Return a new random identifier such as ``tool_0aB3xYz91``.

    The ``0`` after the separator is a format version marker.
    """

    token = "".join(secrets.choice(_STATIC_ID_ALPHABET) for _ in range(_STATIC_ID_LENGTH))
    return f"{prefix}_0{token}"


def _encode_base62(value: int) -> str:
    if value == 0:
        return CHARSET[0]
    digits: list[str] = []
    while value > 0:
        value, remainder = divmod(value, 62)
        digits.append(CHARSET[remainder])
    return "".join(reversed(digits))


def _decode_base62(encoded: str) -> int:
    value = 0
    for char in encoded:
        try:
            value = value * 62 + _CHAR_VALUES[char]
        except KeyError:
            raise InvalidIdError(f"Invalid character {char!r} in id") from None
    return value


def encode_id(kind_tag: str, numeric_id: int) -> str:
    return f"{kind_tag}_n{_encode_base62(numeric_id * _ID_MULTIPLIER)}"


def decode_id(opaque_id: str) -> tuple[str, int]:
    """Reverse :func:`encode_id`.

    Raises :class:`InvalidIdError` for anything that was not produced by
    ``encode_id``; callers map that to a not-found error.
    """

    if not isinstance(opaque_id, str):
        raise InvalidIdError("Expected a string id")
    kind_tag, sep, encoded = opaque_id.partition("_")
    if not sep or not kind_tag or not encoded.startswith("n") or len(encoded) < 2:
        raise InvalidIdError(f"Malformed id: {opaque_id!r}")
    raw = _decode_base62(encoded[1:])
    numeric_id, remainder = divmod(raw, _ID_MULTIPLIER)
    if remainder or numeric_id <= 0 or numeric_id > MAX_ROW_ID:
        raise InvalidIdError(f"Malformed id: {opaque_id!r}")
    return kind_tag, numeric_id


def decode_id_for_kind(opaque_id: str, kind_tag: str) -> int:
    """Decode ``opaque_id`` and require it to carry ``kind_tag``."""

    decoded_tag, numeric_id = decode_id(opaque_id)
    if decoded_tag != kind_tag:
        raise InvalidIdError(f"Expected a {kind_tag} id, got {decoded_tag}")
    return numeric_id


def id_prefix(static_or_branch_id: str) -> str:
    return static_or_branch_id.split("_", 1)[0]
