from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Mapping, Optional

import bcrypt

# Order matters: the joined string is what gets hashed and compared
FINGERPRINT_HEADERS = ("sec-ch-ua", "user-agent", "accept-language")
FINGERPRINT_SEPARATOR = "-"
FINGERPRINT_ROUNDS = 7


@dataclass(frozen=True)
class Fingerprint:
    """Device fingerprint of one request.

    ``raw`` is compared against stored hashes; ``hashed`` is what gets
    embedded in tokens and session rows. Two derivations of the same headers
    produce different ``hashed`` values because of the per-call salt.
    """

    raw: str
    hashed: str


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        # plain dicts are not case-insensitive like starlette Headers
        value = next(
            (v for k, v in headers.items() if k.lower() == name), None
        )
    return value or ""


def raw_fingerprint(headers: Mapping[str, str]) -> str:
    return FINGERPRINT_SEPARATOR.join(_header(headers, name) for name in FINGERPRINT_HEADERS)


def _digest(raw: str) -> bytes:
    # bcrypt only reads 72 bytes of input; a fixed-size digest keeps every header significant
    return hashlib.sha256(raw.encode("utf-8")).hexdigest().encode("ascii")


def hash_fingerprint(raw: str) -> str:
    return bcrypt.hashpw(_digest(raw), bcrypt.gensalt(rounds=FINGERPRINT_ROUNDS)).decode("utf-8")


def derive(headers: Mapping[str, str]) -> Fingerprint:
    raw = raw_fingerprint(headers)
    return Fingerprint(raw=raw, hashed=hash_fingerprint(raw))


def matches(raw: Optional[str], hashed: Optional[str]) -> bool:
    """Return True when ``raw`` produced ``hashed``; malformed input is a mismatch."""
    if raw is None or not hashed:
        return False
    try:
        return bcrypt.checkpw(_digest(raw), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False
