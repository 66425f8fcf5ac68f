"""Tests for restclient.digest.

Tests cover:
- Challenge parsing: quoted/bare values, case-insensitive keys, junk input
- Response building against the RFC 2617 test vector
- Directive order and quoting with and without qop
- md5-sess HA1 recomputation
- Nonce generation and its fallback path
"""

import hashlib
import re
from unittest.mock import patch

import pytest

from restclient.digest import (
    _fallback_nonce_bytes,
    build_response,
    generate_nonce,
    parse_challenge,
)
from restclient.models import DigestChallenge


def _md5(s: str) -> str:
    return hashlib.md5(s.encode()).hexdigest()


class TestParseChallenge:
    def test_full_challenge(self) -> None:
        challenge = parse_challenge(
            'Digest realm="testrealm@host.com", qop="auth,auth-int", '
            'nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093", '
            'opaque="5ccc069c403ebaf9f0171e9517f40e41", algorithm=MD5'
        )
        assert challenge == DigestChallenge(
            realm="testrealm@host.com",
            nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",
            opaque="5ccc069c403ebaf9f0171e9517f40e41",
            qop="auth,auth-int",
            algorithm="MD5",
        )

    def test_keys_case_insensitive(self) -> None:
        challenge = parse_challenge('Digest REALM="r", Nonce="n", QOP=auth')
        assert challenge.realm == "r"
        assert challenge.nonce == "n"
        assert challenge.qop == "auth"

    def test_bare_values(self) -> None:
        challenge = parse_challenge("Digest realm=r1, nonce=abc123, algorithm=MD5-sess")
        assert challenge.realm == "r1"
        assert challenge.nonce == "abc123"
        assert challenge.algorithm == "MD5-sess"

    def test_unknown_keys_ignored(self) -> None:
        challenge = parse_challenge('Digest realm="r", stale=FALSE, domain="/x"')
        assert challenge == DigestChallenge(realm="r")

    def test_malformed_input_yields_empty_challenge(self) -> None:
        assert parse_challenge("Digest !!!") == DigestChallenge()
        assert parse_challenge("") == DigestChallenge()


# RFC 2617 section 3.5 example
RFC_CHALLENGE = DigestChallenge(
    realm="testrealm@host.com",
    nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",
    opaque="5ccc069c403ebaf9f0171e9517f40e41",
    qop="auth",
)


class TestBuildResponse:
    def test_rfc2617_vector(self) -> None:
        with patch("restclient.digest.generate_nonce", return_value="0a4f113b"):
            header = build_response(
                "Mufasa", "Circle Of Life", "GET", "/dir/index.html", RFC_CHALLENGE
            )

        assert header == (
            'username="Mufasa", realm="testrealm@host.com", '
            'nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093", uri="/dir/index.html", '
            'qop=auth, nc=00000001, cnonce="0a4f113b", '
            'response="6629fae49393a05397450978507c4ef1", '
            'opaque="5ccc069c403ebaf9f0171e9517f40e41"'
        )

    def test_qop_auth_includes_nc_and_cnonce(self) -> None:
        header = build_response("u", "p", "GET", "/", DigestChallenge(realm="r", nonce="n", qop="auth"))
        assert "nc=00000001" in header
        assert re.search(r'cnonce="[0-9a-f]{32}"', header)

    def test_qop_list_containing_auth_uses_auth(self) -> None:
        header = build_response("u", "p", "GET", "/", DigestChallenge(nonce="n", qop="auth-int,auth"))
        assert "qop=auth," in header

    def test_no_qop_omits_nc_and_cnonce(self) -> None:
        challenge = DigestChallenge(realm="r", nonce="n")
        header = build_response("user", "pw", "POST", "/a?b=1", challenge)

        ha1 = _md5("user:r:pw")
        ha2 = _md5("POST:/a?b=1")
        assert header == (
            f'username="user", realm="r", nonce="n", uri="/a?b=1", '
            f'response="{_md5(f"{ha1}:n:{ha2}")}"'
        )
        assert "nc=" not in header
        assert "cnonce" not in header

    def test_opaque_then_algorithm_appended_algorithm_unquoted(self) -> None:
        challenge = DigestChallenge(realm="r", nonce="n", opaque="o", algorithm="MD5")
        header = build_response("u", "p", "GET", "/", challenge)
        assert header.endswith(', opaque="o", algorithm=MD5')

    def test_md5_sess_rehashes_ha1_with_cnonce(self) -> None:
        challenge = DigestChallenge(realm="r", nonce="n", algorithm="MD5-sess")
        with patch("restclient.digest.generate_nonce", return_value="cn"):
            header = build_response("u", "p", "GET", "/x", challenge)

        ha1 = _md5(f"{_md5('u:r:p')}:n:cn")
        ha2 = _md5("GET:/x")
        assert f'response="{_md5(f"{ha1}:n:{ha2}")}"' in header
        assert header.endswith("algorithm=MD5-sess")

    def test_password_with_spaces(self) -> None:
        challenge = DigestChallenge(realm="r", nonce="n")
        header = build_response("u", "two words", "GET", "/", challenge)
        ha1 = _md5("u:r:two words")
        ha2 = _md5("GET:/")
        assert f'response="{_md5(f"{ha1}:n:{ha2}")}"' in header


class TestGenerateNonce:
    def test_32_hex_chars(self) -> None:
        nonce = generate_nonce()
        assert re.fullmatch(r"[0-9a-f]{32}", nonce)

    def test_nonces_differ(self) -> None:
        assert len({generate_nonce() for _ in range(20)}) == 20

    def test_fallback_when_secure_source_unavailable(self) -> None:
        with patch("restclient.digest.secrets.token_hex", side_effect=NotImplementedError):
            nonce = generate_nonce()
        assert re.fullmatch(r"[0-9a-f]{32}", nonce)

    @pytest.mark.parametrize("seed", [0, 1, 1_700_000_000_000_000_000])
    def test_fallback_is_deterministic_for_seed(self, seed: int) -> None:
        assert _fallback_nonce_bytes(seed) == _fallback_nonce_bytes(seed)
        assert len(_fallback_nonce_bytes(seed)) == 16
