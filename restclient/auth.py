"""Auth Processor - Rewrites a request's Authorization header for its scheme.

The Authorization header carries a directive written by the user:

    Basic  <base64>  |  Basic <user:pass>  |  Basic <user> <pass...>
    Digest <user> <pass...>
    AWS    <accessKeyId> <secretAccessKey> [token:T] [region:R] [service:S]

Basic and AWS are resolved immediately. Digest cannot be: the header is
removed and the credentials are stored in the AuthSession, keyed by the exact
request URL, until the server answers with a 401 challenge (see client.py).
Unrecognized schemes pass through untouched.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Callable

from restclient.aws_signer import AwsSigner
from restclient.errors import ValidationError
from restclient.httputil import url_host
from restclient.models import AwsSigningContext, DigestCredentials, HttpRequest

logger = logging.getLogger(__name__)

DEFAULT_AWS_REGION = "us-east-1"
DEFAULT_AWS_SERVICE = "execute-api"


class AuthScheme(str, Enum):
    """Scheme token of an Authorization directive."""

    BASIC = "basic"
    DIGEST = "digest"
    AWS = "aws"
    UNKNOWN = "unknown"

    @classmethod
    def from_token(cls, token: str) -> AuthScheme:
        try:
            return cls(token.lower())
        except ValueError:
            return cls.UNKNOWN


class AuthSession:
    """Digest credentials registered during the lifetime of one client.

    Keyed by exact request URL. Entries are overwritten on re-registration and
    never evicted. All access goes through a lock so concurrent sends from the
    same client neither lose writes nor read a half-written entry.
    """

    def __init__(self) -> None:
        self._digest_credentials: dict[str, DigestCredentials] = {}
        self._lock = Lock()

    def store_digest_credentials(self, url: str, credentials: DigestCredentials) -> None:
        with self._lock:
            self._digest_credentials[url] = credentials

    def get_digest_credentials(self, url: str) -> DigestCredentials | None:
        with self._lock:
            return self._digest_credentials.get(url)

    def digest_urls(self) -> list[str]:
        with self._lock:
            return list(self._digest_credentials)


def is_base64(value: str) -> bool:
    """True if value is strictly valid standard base64 (padding required)."""
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def encode_basic_credentials(args: list[str]) -> str | None:
    """Return the Basic credential token for directive args, or None.

    A lone argument that is already base64 is used verbatim. Otherwise
    `user:pass` in the first argument, or `user pass...` across arguments,
    is base64-encoded. Returns None when no credential can be formed.
    """
    if not args:
        return None

    first = args[0]
    if len(args) == 1 and is_base64(first):
        return first

    if ":" in first:
        return _b64(first)

    if len(args) >= 2:
        return _b64(first + ":" + " ".join(args[1:]))

    return None


def _b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


def aws_context_from_args(url: str, args: list[str]) -> AwsSigningContext:
    """Build the signing context from AWS directive args and the request URL.

    Region and service not given explicitly are derived from the host, e.g.
    s3.us-east-1.amazonaws.com gives service "s3" and region "us-east-1".

    Raises:
        ValidationError: If the access key or secret key is missing, or the
            URL cannot be parsed.
    """
    if len(args) < 2:
        raise ValidationError("AWS auth", "requires accessKeyId and secretAccessKey")

    access_key_id, secret_access_key = args[0], args[1]

    session_token = region = service = ""
    for arg in args[2:]:
        if arg.startswith("token:"):
            session_token = arg.removeprefix("token:")
        elif arg.startswith("region:"):
            region = arg.removeprefix("region:")
        elif arg.startswith("service:"):
            service = arg.removeprefix("service:")

    try:
        host = url_host(url)
    except ValueError as e:
        raise ValidationError("URL", f"cannot be parsed for AWS auth: {e}", url) from e

    if not region or not service:
        labels = host.split(".")
        if len(labels) >= 3:
            if not service:
                service = labels[0]
            if not region and len(labels) >= 4:
                region = labels[1]

    return AwsSigningContext(
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        session_token=session_token,
        region=region or DEFAULT_AWS_REGION,
        service=service or DEFAULT_AWS_SERVICE,
    )


class AuthProcessor:
    """Dispatches the Authorization directive of a request to its scheme handler.

    Usage:
        processor = AuthProcessor()
        processor.process_auth(request)  # mutates request.headers

    Side effects are limited to header mutation and, for Digest, storing
    credentials in the session. No network I/O happens here.
    """

    def __init__(
        self,
        session: AuthSession | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session or AuthSession()
        self._clock = clock
        self._handlers: dict[AuthScheme, Callable[[HttpRequest, list[str]], None]] = {
            AuthScheme.BASIC: self._process_basic,
            AuthScheme.DIGEST: self._store_digest,
            AuthScheme.AWS: self._process_aws,
        }

    def process_auth(self, request: HttpRequest) -> None:
        """Rewrite the request's Authorization header according to its scheme.

        No-op when the header is absent, has fewer than two tokens, or names
        an unknown scheme.

        Raises:
            ValidationError: For an AWS directive without both keys.
        """
        directive = request.headers.get("authorization")
        if not directive:
            return

        tokens = directive.split()
        if len(tokens) < 2:
            return

        scheme = AuthScheme.from_token(tokens[0])
        handler = self._handlers.get(scheme)
        if handler is None:
            return

        logger.debug("Applying %s auth to %s %s", scheme.value, request.method, request.url)
        handler(request, tokens[1:])

    def get_digest_credentials(self, url: str) -> DigestCredentials | None:
        return self.session.get_digest_credentials(url)

    def _process_basic(self, request: HttpRequest, args: list[str]) -> None:
        token = encode_basic_credentials(args)
        if token is not None:
            request.headers["Authorization"] = "Basic " + token

    def _store_digest(self, request: HttpRequest, args: list[str]) -> None:
        if len(args) < 2:
            return

        self.session.store_digest_credentials(
            request.url,
            DigestCredentials(username=args[0], password=" ".join(args[1:])),
        )
        # Restored with a computed response once the server challenges
        del request.headers["authorization"]

    def _process_aws(self, request: HttpRequest, args: list[str]) -> None:
        context = aws_context_from_args(request.url, args)
        AwsSigner(context, clock=self._clock).sign(request)
