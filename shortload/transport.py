"""HTTP transport to the URL-shortening service under test.

Only observes responses: redirects are never followed, and transport
exceptions are folded into a ``RequestOutcome`` with ``status_code=0``.
"""

import logging
import time
from typing import Optional, Protocol, Sequence

import httpx

from shortload.models import RequestKind, RequestOutcome

logger = logging.getLogger(__name__)

SHORT_URLS_PATH = "/rest/v3/short-urls"
_DETAIL_LIMIT = 200


class Transport(Protocol):
    async def create(
        self,
        destination: str,
        slug: Optional[str] = None,
        tags: Sequence[str] = (),
        title: Optional[str] = None,
    ) -> RequestOutcome: ...

    async def resolve(self, short_code: str) -> RequestOutcome: ...


class HttpxTransport:
    """Create and resolve short URLs through an ``httpx.AsyncClient``.

    Pass ``client`` to reuse an existing client (tests hand in one bound to an
    ``ASGITransport``); otherwise one is created on first use and closed by
    ``aclose()``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        max_connections: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            limits=httpx.Limits(
                max_keepalive_connections=max_connections,
                max_connections=max_connections,
            ),
            follow_redirects=False,
        )

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def create(
        self,
        destination: str,
        slug: Optional[str] = None,
        tags: Sequence[str] = (),
        title: Optional[str] = None,
    ) -> RequestOutcome:
        payload = {"longUrl": destination, "findIfExists": False}
        if slug:
            payload["customSlug"] = slug
        if tags:
            payload["tags"] = list(tags)
        if title:
            payload["title"] = title
        headers = {"X-Api-Key": self.api_key, "Content-Type": "application/json"}

        issued_at = time.time()
        start = time.perf_counter()
        try:
            response = await self._client.post(
                f"{self.base_url}{SHORT_URLS_PATH}", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            return _failed(RequestKind.CREATE, slug, issued_at, start, exc)
        latency_ms = (time.perf_counter() - start) * 1000

        assigned_id = None
        if response.status_code in (200, 201):
            try:
                body = response.json()
            except ValueError:
                logger.debug("creation response is not JSON: %.80s", response.text)
                body = None
            if isinstance(body, dict):
                assigned_id = body.get("shortCode")

        return RequestOutcome(
            kind=RequestKind.CREATE,
            target_id=slug,
            issued_at=issued_at,
            completed_at=time.time(),
            status_code=response.status_code,
            has_location_header="location" in response.headers,
            latency_ms=latency_ms,
            assigned_id=assigned_id,
            detail=response.text[:_DETAIL_LIMIT],
        )

    async def resolve(self, short_code: str) -> RequestOutcome:
        issued_at = time.time()
        start = time.perf_counter()
        try:
            response = await self._client.get(
                f"{self.base_url}/{short_code}", follow_redirects=False
            )
        except httpx.HTTPError as exc:
            return _failed(RequestKind.REDIRECT, short_code, issued_at, start, exc)
        latency_ms = (time.perf_counter() - start) * 1000

        return RequestOutcome(
            kind=RequestKind.REDIRECT,
            target_id=short_code,
            issued_at=issued_at,
            completed_at=time.time(),
            status_code=response.status_code,
            has_location_header="location" in response.headers,
            latency_ms=latency_ms,
        )


def _failed(kind: str, target_id: Optional[str], issued_at: float, start: float,
            exc: httpx.HTTPError) -> RequestOutcome:
    error = "timeout" if isinstance(exc, httpx.TimeoutException) else type(exc).__name__
    return RequestOutcome(
        kind=kind,
        target_id=target_id,
        issued_at=issued_at,
        completed_at=time.time(),
        status_code=0,
        has_location_header=False,
        latency_ms=(time.perf_counter() - start) * 1000,
        error=error,
        detail=str(exc)[:_DETAIL_LIMIT],
    )
