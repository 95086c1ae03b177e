from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import IO, Any, AsyncIterator, Callable, Optional

import httpx

from .errors import ConflictError, FleetClientError

logger = logging.getLogger(__name__)


# Status codes that are safe to retry (server-side transient errors).
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


def _error_message(res: httpx.Response) -> str:
    """Extract the ``message`` of a JSON error body, falling back to the raw text."""
    try:
        body = res.json()
    except ValueError:
        return res.text or f"HTTP {res.status_code}"
    if isinstance(body, dict) and body.get("message"):
        errors = body.get("errors")
        if errors:
            return f"{body['message']} {errors}"
        return str(body["message"])
    return res.text or f"HTTP {res.status_code}"


def _raise_for_response(res: httpx.Response) -> None:
    message = _error_message(res)
    if res.status_code == 409:
        raise ConflictError(message, status_code=res.status_code)
    raise FleetClientError(message, status_code=res.status_code)


async def iter_body(res: httpx.Response) -> AsyncIterator[bytes]:
    """Yield the body of a streamed response; transport failures become :class:`FleetClientError`."""
    try:
        async for chunk in res.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        raise FleetClientError(f"Download interrupted: {exc}") from exc


class _ApiClient:
    """Async transport for the Appliance Control API.

    ``api_version`` selects the ``application/vnd.appgate.peer-v<N>+json``
    media type the admin API negotiates on.
    """

    def __init__(
        self,
        auth_token_provider: Callable[[], str],
        api_base: str,
        api_version: int = 18,
        timeout: float = 20.0,
        download_timeout: float = 300.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth_token_provider = auth_token_provider
        self.api_base = api_base.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.verify = verify
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Return a shared httpx.AsyncClient, creating one if needed."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "_ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _headers(self, accept: str = "json") -> dict[str, str]:
        token = self.auth_token_provider()
        if not token:
            raise FleetClientError("auth_token_provider returned an empty token")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": f"application/vnd.appgate.peer-v{self.api_version}+{accept}",
        }

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry.

        Retries on connection errors and retryable HTTP status codes
        (502, 503, 504, 429).  Non-retryable errors (4xx except 429)
        are raised immediately.
        """
        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                client = self._get_client()
                res = await client.request(method, url, **kwargs)

                if res.status_code < 400:
                    return res

                # Non-retryable client error -- fail immediately.
                if res.status_code < 500 and res.status_code not in _RETRYABLE_STATUS_CODES:
                    _raise_for_response(res)

                if res.status_code in _RETRYABLE_STATUS_CODES and attempt < self.max_retries - 1:
                    wait = self.backoff_base * (2**attempt)
                    logger.warning(
                        "Retryable HTTP %d on %s %s (attempt %d/%d, waiting %.1fs)",
                        res.status_code,
                        method,
                        url,
                        attempt + 1,
                        self.max_retries,
                        wait,
                    )
                    await asyncio.sleep(wait)
                    continue

                _raise_for_response(res)

            except FleetClientError:
                raise
            except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as exc:
                last_exc = exc
                if attempt < self.max_retries - 1:
                    wait = self.backoff_base * (2**attempt)
                    logger.warning(
                        "Connection error on %s %s: %s (attempt %d/%d, waiting %.1fs)",
                        method,
                        url,
                        exc,
                        attempt + 1,
                        self.max_retries,
                        wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise FleetClientError(
                        f"Request failed after {self.max_retries} attempts: {exc}"
                    ) from exc
            except httpx.HTTPError as exc:
                raise FleetClientError(f"{method} {url} failed: {exc}") from exc

        raise FleetClientError(
            f"Request failed after {self.max_retries} attempts"
            + (f": {last_exc}" if last_exc else "")
        )

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        res = await self._request_with_retry(
            "GET",
            f"{self.api_base}{path}",
            params=params,
            headers=self._headers(),
        )
        return res.json() if res.content else {}

    async def post(self, path: str, payload: Optional[dict[str, Any]] = None) -> Any:
        res = await self._request_with_retry(
            "POST",
            f"{self.api_base}{path}",
            json=payload or {},
            headers=self._headers(),
        )
        return res.json() if res.content else {}

    async def put(self, path: str, payload: Optional[dict[str, Any]] = None) -> Any:
        res = await self._request_with_retry(
            "PUT",
            f"{self.api_base}{path}",
            json=payload or {},
            headers=self._headers(),
        )
        return res.json() if res.content else {}

    async def delete(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        res = await self._request_with_retry(
            "DELETE",
            f"{self.api_base}{path}",
            params=params,
            headers=self._headers(),
        )
        return res.json() if res.content else {}

    async def upload(self, path: str, filename: str, fh: IO[bytes]) -> None:
        """PUT *fh* as a multipart ``file`` field.

        Uploads are sent once: the file object cannot be rewound by a retry.
        """
        client = self._get_client()
        try:
            res = await client.put(
                f"{self.api_base}{path}",
                files={"file": (filename, fh, "application/octet-stream")},
                headers=self._headers(),
                timeout=self.download_timeout,
            )
        except httpx.HTTPError as exc:
            raise FleetClientError(f"Upload of {filename} failed: {exc}") from exc
        if res.status_code >= 400:
            _raise_for_response(res)

    @asynccontextmanager
    async def stream(self, path: str, accept: str = "gpg") -> AsyncIterator[httpx.Response]:
        """Open a streaming GET; the response body is read chunk by chunk.

        Streaming downloads are not retried: a partially consumed body
        cannot be replayed.
        """
        client = self._get_client()
        request = client.build_request(
            "GET",
            f"{self.api_base}{path}",
            headers=self._headers(accept),
            timeout=self.download_timeout,
        )
        try:
            res = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise FleetClientError(f"Download failed: {exc}") from exc
        try:
            if res.status_code >= 400:
                try:
                    await res.aread()
                except httpx.HTTPError as exc:
                    raise FleetClientError(f"Download failed: {exc}") from exc
                _raise_for_response(res)
            yield res
        finally:
            await res.aclose()
