"""Data models for restclient.

All models use Pydantic v2. Requests are mutable: auth processing adds and
removes headers in place before dispatch. Everything describing a credential
or a parsed challenge is frozen.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _sanitize_header_value(value: str) -> str:
    """Replace non-ASCII characters with '?' (RFC 7230 allows ASCII only)."""
    return value.encode("ascii", errors="replace").decode("ascii")


# =============================================================================
# Request Models
# =============================================================================


class MultipartPart(BaseModel):
    """One field of a multipart/form-data body.

    A part is a descriptor, not content: file parts are re-read from
    file_path every time the body is assembled, so a retried request sends
    the same bytes as the first attempt.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Form field name")
    value: str = Field(default="", description="Field value for text parts")
    file_path: str | None = Field(default=None, description="Local file to upload")
    file_name: str | None = Field(
        default=None, description="Filename sent to the server (defaults to basename of file_path)"
    )
    content_type: str | None = Field(default=None, description="Explicit MIME type of the part")

    @property
    def is_file(self) -> bool:
        return bool(self.file_path)


class HttpRequest(BaseModel):
    """An outgoing HTTP request.

    Body sources, highest priority first: multipart_parts, raw_body, body.
    body is a generic byte source (bytes or a binary file-like object).
    Headers are an httpx.Headers multi-map, so every lookup is case-insensitive.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    method: str = Field(description="HTTP method (upper-cased on construction)")
    url: str = Field(description="Absolute request URL")
    headers: httpx.Headers = Field(default_factory=httpx.Headers, description="Request headers")
    raw_body: str = Field(default="", description="Body as text")
    body: Any = Field(default=None, description="Body as bytes or binary stream")
    multipart_parts: list[MultipartPart] = Field(
        default_factory=list, description="multipart/form-data parts"
    )
    name: str = Field(default="", description="Optional request name")

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def coerce_headers(cls, v: Any) -> httpx.Headers:
        if isinstance(v, httpx.Headers):
            return v
        if v is None:
            return httpx.Headers()
        items = v.items() if isinstance(v, dict) else v
        return httpx.Headers([(k, _sanitize_header_value(str(val))) for k, val in items])

    @field_validator("body")
    @classmethod
    def check_body_source(cls, v: Any) -> Any:
        if v is None or isinstance(v, bytes) or hasattr(v, "read"):
            return v
        raise ValueError("body must be bytes or a binary file-like object")

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def check(self) -> RequestValidationResult:
        """Report problems that would make the request fail or misbehave.

        Advisory only: nothing here blocks sending.
        """
        result = RequestValidationResult()

        if not self.method:
            result.add_issue("Method", "method is required")
        elif self.method not in VALID_METHODS:
            result.add_issue("Method", f"invalid HTTP method: {self.method}")

        self._check_url(result)
        self._check_headers(result)
        return result

    def _check_url(self, result: RequestValidationResult) -> None:
        if not self.url:
            result.add_issue("URL", "URL is required")
            return

        if "{{" in self.url and "}}" in self.url:
            result.add_issue(
                "URL", "URL contains unresolved variables (check your environment configuration)"
            )
            return

        try:
            parsed = urlsplit(self.url)
        except ValueError as e:
            result.add_issue("URL", f"invalid URL: {e}")
            return

        if not parsed.scheme:
            result.add_issue("URL", "URL must include scheme (http:// or https://)")
            return
        if parsed.scheme.lower() not in ("http", "https"):
            result.add_issue(
                "URL", f"unsupported URL scheme: {parsed.scheme} (use http or https)"
            )
            return
        if not parsed.netloc:
            result.add_issue("URL", "URL must include a host")
            return

        if " " in self.url:
            result.add_issue("URL", "URL contains spaces (URLs should be properly encoded)")

    def _check_headers(self, result: RequestValidationResult) -> None:
        for raw_name, raw_value in self.headers.raw:
            name = raw_name.decode("latin-1")
            value = raw_value.decode("latin-1")

            if not _HEADER_NAME_PATTERN.match(name):
                result.add_issue(f"Header:{name}", "header name contains invalid characters")

            if "{{" in value and "}}" in value:
                result.add_issue(f"Header:{name}", "header value contains unresolved variables")

            lower_name = name.lower()
            if lower_name == "content-type" and not value:
                result.add_issue("Header:Content-Type", "Content-Type header is empty")
            elif lower_name == "authorization":
                lower_value = value.lower()
                if any(p in lower_value for p in _AUTH_PLACEHOLDERS):
                    result.add_issue(
                        "Header:Authorization",
                        "Authorization header appears to contain a placeholder value",
                    )


VALID_METHODS = frozenset({
    "GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "CONNECT",
    "TRACE", "LOCK", "UNLOCK", "PROPFIND", "PROPPATCH", "COPY", "MOVE",
    "MKCOL", "MKCALENDAR", "ACL", "SEARCH",
})

# RFC 7230 token characters
_HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

_AUTH_PLACEHOLDERS = ("your-token", "your_token", "<token>", "[token]")


class RequestValidationIssue:
    """A single problem found by HttpRequest.check()."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class RequestValidationResult:
    """Result of HttpRequest.check()."""

    def __init__(self) -> None:
        self.issues: list[RequestValidationIssue] = []

    def add_issue(self, field: str, message: str) -> None:
        self.issues.append(RequestValidationIssue(field, message))

    @property
    def is_valid(self) -> bool:
        return len(self.issues) == 0

    def __str__(self) -> str:
        return "; ".join(str(issue) for issue in self.issues)


# =============================================================================
# Auth Models
# =============================================================================


class DigestCredentials(BaseModel):
    """Username and password registered by a `Digest <user> <pass...>` directive."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str = Field(description="Digest username")
    password: str = Field(description="Digest password (may contain spaces)")


class DigestChallenge(BaseModel):
    """Fields parsed from a `WWW-Authenticate: Digest ...` header.

    Missing fields are empty strings; parsing never fails.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    realm: str = ""
    nonce: str = ""
    opaque: str = ""
    qop: str = ""
    algorithm: str = ""


class AwsSigningContext(BaseModel):
    """Credentials and scope for one AWS Signature V4 signing."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_key_id: str = Field(description="AWS access key ID")
    secret_access_key: str = Field(description="AWS secret access key")
    session_token: str = Field(default="", description="Temporary session token")
    region: str = Field(description="Region in the credential scope")
    service: str = Field(description="Service in the credential scope")


# =============================================================================
# Response Models
# =============================================================================


class HttpResponse(BaseModel):
    """The terminal response of a send, original or retried.

    Header keys are lowercase. Header values are arrays for repeated headers.
    body holds the decoded (e.g. gunzipped) bytes.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    status_code: int = Field(description="HTTP status code")
    reason_phrase: str = Field(default="", description="Status text, e.g. 'OK'")
    http_version: str = Field(default="HTTP/1.1", description="Protocol version")
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="Response headers (lowercase keys, array values)"
    )
    body: bytes = Field(default=b"", description="Decoded body bytes")
    elapsed_ms: float = Field(description="Wall-clock time of the network call in milliseconds")
    request: HttpRequest | None = Field(default=None, description="The request that produced this")

    def get_header(self, name: str) -> str:
        values = self.headers.get(name.lower())
        return values[0] if values else ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        return self.get_header("content-type")

    @property
    def body_size(self) -> int:
        return len(self.body)

    @property
    def headers_size(self) -> int:
        """Approximate size of the header block as sent on the wire."""
        size = 0
        for key, values in self.headers.items():
            size += len(key) + 2  # ": "
            size += sum(len(v) for v in values) + 2 * (len(values) - 1)  # ", "
            size += 2  # "\r\n"
        return size

    def is_json(self) -> bool:
        ct = self.content_type
        return "application/json" in ct or "+json" in ct

    def is_xml(self) -> bool:
        ct = self.content_type
        return "application/xml" in ct or "text/xml" in ct or "+xml" in ct

    def is_html(self) -> bool:
        return "text/html" in self.content_type


# =============================================================================
# Client Configuration Models
# =============================================================================


class CertificateConfig(BaseModel):
    """Client certificate for one host (mTLS)."""

    model_config = ConfigDict(extra="forbid")

    cert: str = Field(description="Path to PEM client certificate")
    key: str | None = Field(default=None, description="Path to PEM private key")
    passphrase: str | None = Field(default=None, description="Private key passphrase")


def _default_headers() -> dict[str, str]:
    return {"User-Agent": "restclient-cli"}


class ClientConfig(BaseModel):
    """HTTP client settings (loaded from YAML by config_loader)."""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=0, ge=0, description="Request timeout; 0 means none")
    follow_redirects: bool = Field(default=True, description="Follow 3xx redirects")
    insecure_ssl: bool = Field(default=False, description="Skip server certificate verification")
    proxy: str = Field(default="", description="Proxy URL for all requests")
    exclude_hosts_for_proxy: list[str] = Field(
        default_factory=list, description="Hosts (and their subdomains) that bypass the proxy"
    )
    remember_cookies: bool = Field(default=True, description="Keep cookies between requests")
    default_headers: dict[str, str] = Field(
        default_factory=_default_headers,
        description="Headers added to every request unless the request sets them",
    )
    certificates: dict[str, CertificateConfig] = Field(
        default_factory=dict, description="Host -> client certificate mapping"
    )

    @property
    def timeout_seconds(self) -> float | None:
        return self.timeout_ms / 1000 if self.timeout_ms > 0 else None
