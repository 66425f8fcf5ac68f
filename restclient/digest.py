"""Digest challenge parsing and response building (RFC 2617 style).

The response format is fixed:
    username="u", realm="r", nonce="n", uri="p", qop=auth, nc=00000001,
    cnonce="c", response="h"[, opaque="o"][, algorithm=A]

nc is always 00000001: the client keeps no per-nonce counter, so every
response looks like the first use of the server's nonce.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import time

from restclient.models import DigestChallenge

# key=value or key="value"; keys are matched case-insensitively below.
_CHALLENGE_PARAM = re.compile(r'(\w+)=(?:"([^"]+)"|([^,\s]+))')

_CHALLENGE_FIELDS = frozenset({"realm", "nonce", "opaque", "qop", "algorithm"})

NONCE_COUNT = "00000001"


def parse_challenge(header: str) -> DigestChallenge:
    """Parse a WWW-Authenticate header value into a DigestChallenge.

    Unknown keys are ignored. Input that contains no recognizable parameters
    yields a challenge with every field empty.
    """
    fields: dict[str, str] = {}
    for match in _CHALLENGE_PARAM.finditer(header):
        key = match.group(1).lower()
        if key in _CHALLENGE_FIELDS:
            fields[key] = match.group(2) or match.group(3) or ""
    return DigestChallenge(**fields)


def build_response(
    username: str,
    password: str,
    method: str,
    uri: str,
    challenge: DigestChallenge,
) -> str:
    """Build the directive list for an `Authorization: Digest ...` header.

    Returns the directives without the leading "Digest " scheme token.
    """
    ha1 = _md5_hex(f"{username}:{challenge.realm}:{password}")

    if challenge.algorithm.lower() == "md5-sess":
        ha1 = _md5_hex(f"{ha1}:{challenge.nonce}:{generate_nonce()}")

    ha2 = _md5_hex(f"{method}:{uri}")

    if "auth" in challenge.qop:
        cnonce = generate_nonce()
        response = _md5_hex(f"{ha1}:{challenge.nonce}:{NONCE_COUNT}:{cnonce}:auth:{ha2}")
        params = [
            f'username="{username}"',
            f'realm="{challenge.realm}"',
            f'nonce="{challenge.nonce}"',
            f'uri="{uri}"',
            "qop=auth",
            f"nc={NONCE_COUNT}",
            f'cnonce="{cnonce}"',
            f'response="{response}"',
        ]
    else:
        response = _md5_hex(f"{ha1}:{challenge.nonce}:{ha2}")
        params = [
            f'username="{username}"',
            f'realm="{challenge.realm}"',
            f'nonce="{challenge.nonce}"',
            f'uri="{uri}"',
            f'response="{response}"',
        ]

    if challenge.opaque:
        params.append(f'opaque="{challenge.opaque}"')
    if challenge.algorithm:
        params.append(f"algorithm={challenge.algorithm}")

    return ", ".join(params)


def generate_nonce() -> str:
    """Return 16 random bytes as 32 lowercase hex characters.

    Falls back to a time-seeded linear congruential sequence if the OS
    random source is unavailable, so this never raises.
    """
    try:
        return secrets.token_hex(16)
    except NotImplementedError:
        return _fallback_nonce_bytes(time.time_ns()).hex()


def _fallback_nonce_bytes(seed: int) -> bytes:
    out = bytearray(16)
    t = seed
    for i in range(16):
        out[i] = (t >> (i % 8)) & 0xFF
        t = (t * 1103515245 + 12345) & 0xFFFFFFFFFFFFFFFF
    return bytes(out)


def _md5_hex(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()
