"""AWS Signature Version 4 request signing.

Signing is deterministic for a given instant: the clock is injectable so
tests can sign twice and compare. The canonical query string is the URL's
raw query, used verbatim; callers that need a valid signature for a
multi-parameter query must pass its parameters pre-sorted.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urlsplit

from restclient.errors import ValidationError
from restclient.httputil import escaped_path, url_host
from restclient.models import AwsSigningContext, HttpRequest

ALGORITHM = "AWS4-HMAC-SHA256"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AwsSigner:
    """Signs HttpRequest objects in place with AWS SigV4.

    Usage:
        signer = AwsSigner(AwsSigningContext(access_key_id=..., ...))
        signer.sign(request)  # sets X-Amz-Date and Authorization
    """

    def __init__(
        self,
        context: AwsSigningContext,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._context = context
        self._clock = clock or _utc_now

    def sign(self, request: HttpRequest) -> None:
        """Add X-Amz-Date (and X-Amz-Security-Token) and the Authorization header.

        Raises:
            ValidationError: If the request URL cannot be parsed. Headers are
                not modified in that case.
        """
        try:
            canonical_uri = escaped_path(request.url) or "/"
            host = url_host(request.url)
            query = urlsplit(request.url).query
        except ValueError as e:
            raise ValidationError("URL", f"cannot be parsed for AWS auth: {e}", request.url) from e

        now = self._clock().astimezone(timezone.utc)
        date_stamp = now.strftime("%Y%m%d")
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")

        headers = request.headers
        headers["X-Amz-Date"] = amz_date
        if self._context.session_token:
            headers["X-Amz-Security-Token"] = self._context.session_token

        # Authorization must not be among the signed headers
        if "authorization" in headers:
            del headers["authorization"]

        # httpx.Headers keys are already lowercase; host always comes from the URL
        signed_names = sorted({name for name in headers.keys() if name != "host"} | {"host"})
        canonical_headers = ""
        for name in signed_names:
            value = host if name == "host" else headers.get(name, "")
            canonical_headers += f"{name}:{value.strip()}\n"
        signed_headers = ";".join(signed_names)

        payload_hash = _sha256_hex(request.raw_body)

        canonical_request = "\n".join([
            request.method,
            canonical_uri,
            query,
            canonical_headers,
            signed_headers,
            payload_hash,
        ])

        ctx = self._context
        credential_scope = f"{date_stamp}/{ctx.region}/{ctx.service}/aws4_request"
        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            credential_scope,
            _sha256_hex(canonical_request),
        ])

        signing_key = signing_key_for(ctx.secret_access_key, date_stamp, ctx.region, ctx.service)
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        headers["Authorization"] = (
            f"{ALGORITHM} Credential={ctx.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )


def signing_key_for(secret: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key: HMAC chain over date, region, service."""
    k_date = _hmac_sha256(("AWS4" + secret).encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


def _hmac_sha256(key: bytes, data: str) -> bytes:
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()
