"""HTTP Client - Sends requests, answering Digest challenges with one retry.

A send runs through two states:

    INITIAL   process auth, merge default headers, assemble the body, dispatch.
    RETRYING  entered only when the INITIAL response is a 401 carrying a
              `WWW-Authenticate: Digest ...` challenge and Digest credentials
              were registered for the request's exact URL. The Authorization
              header is computed from the challenge, the body is rebuilt from
              its descriptors, and the request is dispatched once more.

There is no transition out of RETRYING other than returning, so a request is
retried at most once. If the retry cannot be built or sent, the failure is
logged as a warning and the original 401 response is returned.
"""

from __future__ import annotations

import logging
import ssl
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from http.cookiejar import Cookie, CookieJar, DefaultCookiePolicy
from threading import Event, Lock, Thread
from typing import Any, Callable, Iterable

import httpx

from restclient.auth import AuthProcessor
from restclient.digest import build_response, parse_challenge
from restclient.errors import RequestCancelledError, RequestError, ValidationError
from restclient.httputil import request_uri
from restclient.models import (
    CertificateConfig,
    ClientConfig,
    DigestCredentials,
    HttpRequest,
    HttpResponse,
)
from restclient.multipart import build_multipart_files

logger = logging.getLogger(__name__)

_PROXY_SCHEMES = frozenset({"http", "https", "socks5", "socks5h"})


class SendState(str, Enum):
    """States of a single send."""

    INITIAL = "initial"
    RETRYING = "retrying"


class CancelToken:
    """Thread-safe cancellation flag shared by a send and its Digest retry.

    A send waiting on the network returns as soon as the token fires: the
    exchange runs on a worker thread and the caller stops waiting for it.
    """

    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback on cancel (now, if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class HttpClient:
    """Sends HttpRequest objects and returns fully read HttpResponse objects.

    One client owns one AuthSession (Digest credentials) and one cookie jar;
    both may be shared by concurrent send() calls from several threads.

    Usage:
        with HttpClient(ClientConfig()) as client:
            response = client.send(request)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: httpx.BaseTransport | None = None,
        auth_processor: AuthProcessor | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client settings. Defaults to ClientConfig().
            transport: Transport to dispatch through instead of the network
                       (e.g. httpx.MockTransport). Proxy and certificate
                       settings are not applied to an injected transport.
            auth_processor: Processor owning the Digest credential cache.

        Raises:
            ValidationError: If the proxy URL or a client certificate is invalid.
        """
        self._config = config or ClientConfig()
        self._auth = auth_processor or AuthProcessor()
        self._cookie_lock = Lock()
        self._client = httpx.Client(**self._build_client_kwargs(self._config, transport))

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @property
    def auth_processor(self) -> AuthProcessor:
        return self._auth

    # -------------------------------------------------------------------------
    # Client construction
    # -------------------------------------------------------------------------

    def _build_client_kwargs(
        self,
        config: ClientConfig,
        transport: httpx.BaseTransport | None,
    ) -> dict[str, Any]:
        """Build kwargs for httpx.Client from the client configuration."""
        proxy = _validate_proxy(config.proxy) if config.proxy else None
        verify: bool | ssl.SSLContext = not config.insecure_ssl

        kwargs: dict[str, Any] = {
            "timeout": config.timeout_seconds,
            "follow_redirects": config.follow_redirects,
        }

        if not config.remember_cookies:
            # A jar whose policy accepts no domain never stores Set-Cookie
            kwargs["cookies"] = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))

        if transport is not None:
            kwargs["transport"] = transport
            return kwargs

        kwargs["verify"] = verify

        mounts: dict[str, httpx.BaseTransport | None] = {}
        if proxy:
            mounts["all://"] = httpx.HTTPTransport(proxy=proxy, verify=verify)
            # None routes the pattern to the client's default, unproxied transport
            for host in config.exclude_hosts_for_proxy:
                mounts[f"all://{host.lower()}"] = None
                mounts[f"all://*.{host.lower()}"] = None

        for host, certificate in config.certificates.items():
            mounts[f"all://{host.lower()}"] = httpx.HTTPTransport(
                proxy=None if _is_excluded(host, config.exclude_hosts_for_proxy) else proxy,
                verify=_ssl_context_for(host, certificate, config.insecure_ssl),
            )

        if mounts:
            kwargs["mounts"] = mounts
        return kwargs

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send(
        self,
        request: HttpRequest,
        cancel_token: CancelToken | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        """Send a request, answering a Digest challenge with at most one retry.

        The request is mutated in place: auth processing rewrites its
        Authorization header and default headers are merged into it.

        Args:
            request: The request to send.
            cancel_token: Optional token to abort the send.
            timeout: Per-call timeout in seconds, overriding the config.

        Returns:
            The terminal response: the retried one if a Digest retry
            succeeded, otherwise the original.

        Raises:
            ValidationError: If auth processing rejects the request.
            RequestError: If the request cannot be built, sent, or read.
            RequestCancelledError: If cancel_token fires.
        """
        self._auth.process_auth(request)

        for name, value in self._config.default_headers.items():
            if name not in request.headers:
                request.headers[name] = value

        body_offset = _stream_offset(request.body)

        state = SendState.INITIAL
        original: HttpResponse | None = None
        while True:
            try:
                if state is SendState.RETRYING:
                    self._rewind_body(request, body_offset)
                response = self._dispatch(request, cancel_token, timeout)
            except RequestCancelledError:
                raise
            except RequestError as e:
                if state is SendState.INITIAL:
                    raise
                logger.warning("digest auth retry failed: %s", e)
                return original

            if state is SendState.RETRYING:
                return response

            credentials = self._auth.get_digest_credentials(request.url)
            challenge_header = _digest_challenge_header(response)
            if response.status_code != 401 or not challenge_header or credentials is None:
                return response

            _raise_if_cancelled(request, cancel_token)
            try:
                self._apply_digest_challenge(request, challenge_header, credentials)
            except RequestError as e:
                logger.warning("digest auth retry failed: %s", e)
                return response

            logger.debug("Retrying %s %s with Digest credentials", request.method, request.url)
            original = response
            state = SendState.RETRYING

    def send_batch(
        self,
        requests: Iterable[HttpRequest],
        max_workers: int = 8,
        cancel_token: CancelToken | None = None,
    ) -> list[HttpResponse]:
        """Send requests in parallel through this client.

        Returns responses in input order. The first fatal error (in input
        order) propagates after all submitted sends finish.
        """
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(self.send, request, cancel_token) for request in requests]
            return [future.result() for future in futures]

    def _apply_digest_challenge(
        self,
        request: HttpRequest,
        challenge_header: str,
        credentials: DigestCredentials,
    ) -> None:
        """Set the Authorization header answering the server's Digest challenge."""
        try:
            uri = request_uri(request.url)
        except ValueError as e:
            raise RequestError("build", request.method, request.url, str(e)) from e

        directive = build_response(
            credentials.username,
            credentials.password,
            request.method,
            uri,
            parse_challenge(challenge_header),
        )
        request.headers["Authorization"] = "Digest " + directive

    def _rewind_body(self, request: HttpRequest, body_offset: int | None) -> None:
        """Reposition a stream body so the retry sends it again from the start."""
        if request.multipart_parts or request.raw_body or request.body is None:
            return
        if isinstance(request.body, bytes):
            return
        if body_offset is None:
            raise RequestError(
                "build", request.method, request.url, "request body stream cannot be replayed"
            )
        try:
            request.body.seek(body_offset)
        except (OSError, ValueError) as e:
            raise RequestError("build", request.method, request.url, str(e)) from e

    def _build_request(self, request: HttpRequest, timeout: float | None) -> httpx.Request:
        """Assemble the httpx request. Multipart beats raw text beats stream."""
        headers = httpx.Headers(request.headers)
        content: bytes | None = None
        files = None

        if request.multipart_parts:
            files = build_multipart_files(request.multipart_parts)
            # httpx generates Content-Type with the boundary it used
            if "content-type" in headers:
                del headers["content-type"]
        elif request.raw_body:
            content = request.raw_body.encode("utf-8")
        elif request.body is not None:
            content = request.body if isinstance(request.body, bytes) else request.body.read()

        return self._client.build_request(
            method=request.method,
            url=request.url,
            headers=headers,
            content=content,
            files=files,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )

    def _dispatch(
        self,
        request: HttpRequest,
        cancel_token: CancelToken | None,
        timeout: float | None,
    ) -> HttpResponse:
        """Build, send and fully read one request.

        With a cancel_token the exchange runs on a worker thread, and the
        caller stops waiting the moment the token fires. The abandoned worker
        finishes on its own, bounded by the timeout.

        Raises:
            RequestError: If the request fails to build, send or read.
            RequestCancelledError: If cancel_token fires.
        """
        _raise_if_cancelled(request, cancel_token)

        try:
            http_request = self._build_request(request, timeout)
        except (OSError, ValueError, TypeError, httpx.InvalidURL) as e:
            raise RequestError("build", request.method, request.url, str(e)) from e

        if cancel_token is None:
            return self._exchange(http_request, request, None)

        outcome: Future[HttpResponse] = Future()
        wake = Event()
        outcome.add_done_callback(lambda _: wake.set())
        unregister = cancel_token.add_callback(wake.set)
        Thread(
            target=self._run_exchange,
            args=(outcome, http_request, request, cancel_token),
            name="restclient-dispatch",
            daemon=True,
        ).start()
        try:
            wake.wait()
        finally:
            unregister()

        _raise_if_cancelled(request, cancel_token)
        return outcome.result()

    def _run_exchange(
        self,
        outcome: Future[HttpResponse],
        http_request: httpx.Request,
        request: HttpRequest,
        cancel_token: CancelToken,
    ) -> None:
        try:
            outcome.set_result(self._exchange(http_request, request, cancel_token))
        except Exception as e:
            outcome.set_exception(e)

    def _exchange(
        self,
        http_request: httpx.Request,
        request: HttpRequest,
        cancel_token: CancelToken | None,
    ) -> HttpResponse:
        """Send http_request and read the whole response body."""
        start_time = time.perf_counter()
        try:
            http_response = self._client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise RequestError("send", request.method, request.url, f"request timeout: {e}") from e
        except httpx.ConnectError as e:
            raise RequestError("send", request.method, request.url, f"connection error: {e}") from e
        except httpx.RequestError as e:
            raise RequestError("send", request.method, request.url, f"request failed: {e}") from e

        try:
            body = self._read_body(http_response, request, cancel_token)
        finally:
            http_response.close()
        # An empty body yields no chunks to check between
        _raise_if_cancelled(request, cancel_token)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            "%s %s -> %d (%.1f ms)",
            request.method, request.url, http_response.status_code, elapsed_ms,
        )
        return self._convert_response(http_response, body, elapsed_ms, request)

    def _read_body(
        self,
        response: httpx.Response,
        request: HttpRequest,
        cancel_token: CancelToken | None,
    ) -> bytes:
        """Read the decoded (e.g. gunzipped) body, checking for cancellation."""
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                _raise_if_cancelled(request, cancel_token)
        except httpx.DecodingError as e:
            raise RequestError(
                "read", request.method, request.url, f"failed to decode response body: {e}"
            ) from e
        except httpx.RequestError as e:
            raise RequestError(
                "read", request.method, request.url, f"failed to read response body: {e}"
            ) from e
        return b"".join(chunks)

    def _convert_response(
        self,
        response: httpx.Response,
        body: bytes,
        elapsed_ms: float,
        request: HttpRequest,
    ) -> HttpResponse:
        """Convert an httpx Response to HttpResponse (lowercase keys, list values)."""
        headers: dict[str, list[str]] = {}
        for key, value in response.headers.multi_items():
            headers.setdefault(key.lower(), []).append(value)

        return HttpResponse(
            status_code=response.status_code,
            reason_phrase=response.reason_phrase,
            http_version=response.http_version,
            headers=headers,
            body=body,
            elapsed_ms=elapsed_ms,
            request=request,
        )

    # -------------------------------------------------------------------------
    # Cookies
    # -------------------------------------------------------------------------

    def get_cookies(self, url: str) -> list[Cookie]:
        """Return stored cookies whose domain matches the host of url."""
        if not self._config.remember_cookies:
            return []
        host = httpx.URL(url).host.lower()
        with self._cookie_lock:
            return [
                cookie for cookie in self._client.cookies.jar
                if _domain_matches(host, cookie.domain)
            ]

    def set_cookies(self, url: str, cookies: dict[str, str]) -> None:
        """Store name -> value cookies for the host of url."""
        if not self._config.remember_cookies or not cookies:
            return
        host = httpx.URL(url).host.lower()
        with self._cookie_lock:
            for name, value in cookies.items():
                self._client.cookies.set(name, value, domain=host)

    def clear_cookies(self) -> None:
        with self._cookie_lock:
            self._client.cookies.clear()


def _digest_challenge_header(response: HttpResponse) -> str:
    """Return the first WWW-Authenticate value offering Digest, or ""."""
    for value in response.headers.get("www-authenticate", []):
        if value.lower().startswith("digest "):
            return value
    return ""


def _raise_if_cancelled(request: HttpRequest, cancel_token: CancelToken | None) -> None:
    if cancel_token is not None and cancel_token.cancelled:
        raise RequestCancelledError("cancel", request.method, request.url, "request cancelled")


def _stream_offset(body: Any) -> int | None:
    """Starting offset of a seekable stream body, None when it cannot be rewound."""
    if body is None or isinstance(body, bytes):
        return None
    seekable = getattr(body, "seekable", None)
    if seekable is None or not seekable():
        return None
    return body.tell()


def _validate_proxy(proxy: str) -> str:
    """Reject proxy URLs that are not absolute http(s)/socks5 URLs with a host."""
    try:
        url = httpx.URL(proxy)
    except httpx.InvalidURL as e:
        raise ValidationError("proxy URL", str(e), proxy) from e
    if url.scheme not in _PROXY_SCHEMES or not url.host:
        raise ValidationError(
            "proxy URL", "must be an absolute http, https or socks5 URL with a host", proxy
        )
    return proxy


def _is_excluded(host: str, excluded: list[str]) -> bool:
    host = host.lower()
    return any(host == e.lower() or host.endswith("." + e.lower()) for e in excluded)


def _domain_matches(host: str, cookie_domain: str) -> bool:
    domain = cookie_domain.lstrip(".").lower()
    return host == domain or host.endswith("." + domain)


def _ssl_context_for(host: str, certificate: CertificateConfig, insecure: bool) -> ssl.SSLContext:
    """Build an SSL context presenting the client certificate configured for host."""
    ssl_context = ssl.create_default_context()
    if insecure:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    try:
        ssl_context.load_cert_chain(certificate.cert, certificate.key, certificate.passphrase)
    except (OSError, ssl.SSLError) as e:
        raise ValidationError("certificate", f"cannot load client certificate: {e}", host) from e
    return ssl_context
