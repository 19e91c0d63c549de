# src/engine/guid.py — v2
"""GUID codec — reversible, deterministic entity identity tokens.

A GUID is the unpadded base64 of ``"{accountId}|{DOMAIN}|{TYPE}|{identifier}"``.
Domain and type are restricted to ``[A-Z0-9_]`` so the first three
separators are unambiguous; the identifier may contain anything, including
``|``. This is an identity codec, not a security primitive: no hashing,
no secret, the token decodes back to its exact inputs.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import NamedTuple

from entitysynth.core.errors import InvalidGuid

_TOKEN_RE = re.compile(r"^[A-Za-z0-9+/]+$")
_TAXON_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
_ACCOUNT_RE = re.compile(r"^\d+$")
_SEPARATOR = "|"


class GuidParts(NamedTuple):
    """Decoded components of a GUID."""

    account_id: int
    domain: str
    type: str
    identifier: str


def encode_guid(account_id: int, domain: str, entity_type: str, identifier: str) -> str:
    """Encode an entity identity into its GUID.

    Raises:
        ValueError: If a component cannot be represented (negative account,
            malformed domain/type, empty identifier, or an identifier
            that is not encodable text such as a lone surrogate).
    """
    if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id < 0:
        raise ValueError(f"account_id must be a non-negative int, got {account_id!r}")
    if not _TAXON_RE.match(domain):
        raise ValueError(f"Invalid domain: {domain!r}")
    if not _TAXON_RE.match(entity_type):
        raise ValueError(f"Invalid entity type: {entity_type!r}")
    if not identifier:
        raise ValueError("identifier must be non-empty")

    raw = _SEPARATOR.join((str(account_id), domain, entity_type, identifier))
    try:
        data = raw.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValueError(f"identifier is not encodable text: {identifier!r}") from exc
    return base64.b64encode(data).decode("ascii").rstrip("=")


def decode_guid(guid: str) -> GuidParts:
    """Decode a GUID produced by encode_guid.

    Raises:
        InvalidGuid: If the token is not a canonical GUID.
    """
    if not isinstance(guid, str) or not guid:
        raise InvalidGuid(str(guid), "empty or not a string")
    if not _TOKEN_RE.match(guid):
        raise InvalidGuid(guid, "contains characters outside the base64 alphabet")
    if len(guid) % 4 == 1:
        raise InvalidGuid(guid, "impossible base64 length")

    padded = guid + "=" * (-len(guid) % 4)
    try:
        raw = base64.b64decode(padded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise InvalidGuid(guid, f"not valid base64 text: {exc}") from exc

    parts = raw.split(_SEPARATOR, 3)
    if len(parts) != 4:
        raise InvalidGuid(guid, f"expected 4 components, got {len(parts)}")
    account, domain, entity_type, identifier = parts
    if not _ACCOUNT_RE.match(account):
        raise InvalidGuid(guid, f"account {account!r} is not numeric")
    if not _TAXON_RE.match(domain):
        raise InvalidGuid(guid, f"invalid domain {domain!r}")
    if not _TAXON_RE.match(entity_type):
        raise InvalidGuid(guid, f"invalid entity type {entity_type!r}")
    if not identifier:
        raise InvalidGuid(guid, "empty identifier")

    decoded = GuidParts(int(account), domain, entity_type, identifier)
    # Leading zeros in the account or stray low bits decode but do not round-trip.
    if encode_guid(*decoded) != guid:
        raise InvalidGuid(guid, "non-canonical encoding")
    return decoded


def is_valid_guid(guid: str) -> bool:
    """True if the token decodes as a canonical GUID."""
    try:
        decode_guid(guid)
    except InvalidGuid:
        return False
    return True
