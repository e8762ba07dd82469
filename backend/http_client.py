"""
Scrum PM — Outbound HTTP client

JSON requests over ``httpx.AsyncClient`` with a per-request timeout and
exponential backoff between attempts. Non-2xx responses count as failures
and are retried like transport errors; after the last attempt the last
error is raised to the caller.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx

from logging_system import LogCategory, get_logger

logger = get_logger("http")

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


@dataclass
class HttpResponse:
    data: Any
    status: int
    status_text: str
    headers: Dict[str, str] = field(default_factory=dict)


def build_url(base: str, path: str) -> str:
    """Join ``base`` and ``path`` with exactly one slash between them."""
    if not base:
        return path
    if not path:
        return base
    if base.endswith("/") and path.startswith("/"):
        return base + path[1:]
    if not base.endswith("/") and not path.startswith("/"):
        return f"{base}/{path}"
    return base + path


def _header_int(headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def pagination_headers(total: int, page: int, limit: int) -> Dict[str, str]:
    """Response headers read back by ``parse_pagination_headers``."""
    return {
        "X-Total-Count": str(total),
        "X-Page": str(page),
        "X-Limit": str(limit),
        "X-Has-Next": "true" if page * limit < total else "false",
        "X-Has-Prev": "true" if page > 1 else "false",
    }


def parse_pagination_headers(headers) -> Dict[str, Any]:
    """Read x-total-count / x-page / x-limit / x-has-next / x-has-prev."""
    return {
        "total": _header_int(headers, "x-total-count"),
        "page": _header_int(headers, "x-page"),
        "limit": _header_int(headers, "x-limit"),
        "has_next": headers.get("x-has-next") == "true",
        "has_prev": headers.get("x-has-prev") == "true",
    }


class HttpClient:
    """Retrying JSON client.

    ``retries`` is the total number of attempts. Between attempts the
    client sleeps ``retry_delay * 2 ** attempt`` seconds.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json", **(headers or {})},
            transport=transport,
        )

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> HttpResponse:
        method = method.upper()
        target = build_url(self.base_url, url) if self.base_url else url
        attempts = max(1, self.retries if retries is None else retries)
        delay = self.retry_delay if retry_delay is None else retry_delay
        body = json if method != "GET" else None

        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                response = await self._client.request(
                    method,
                    target,
                    params=params,
                    json=body,
                    headers=headers,
                    timeout=self.timeout if timeout is None else timeout,
                )
                response.raise_for_status()
                return HttpResponse(
                    data=response.json() if response.content else None,
                    status=response.status_code,
                    status_text=response.reason_phrase,
                    headers=dict(response.headers),
                )
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt < attempts - 1:
                    wait = delay * (2 ** attempt)
                    logger.warn(
                        f"HTTP {method} {target} failed, retrying in {wait:.2f}s",
                        category=LogCategory.INTEGRATION,
                        metadata={"attempt": attempt + 1, "attempts": attempts, "error": str(exc)},
                    )
                    await asyncio.sleep(wait)

        logger.error(
            f"HTTP {method} {target} failed after {attempts} attempts",
            category=LogCategory.INTEGRATION,
            error=last_error,
        )
        raise last_error

    async def get(self, url: str, **options) -> Any:
        return (await self.request("GET", url, **options)).data

    async def post(self, url: str, body: Any = None, **options) -> Any:
        return (await self.request("POST", url, json=body, **options)).data

    async def put(self, url: str, body: Any = None, **options) -> Any:
        return (await self.request("PUT", url, json=body, **options)).data

    async def patch(self, url: str, body: Any = None, **options) -> Any:
        return (await self.request("PATCH", url, json=body, **options)).data

    async def delete(self, url: str, **options) -> Any:
        return (await self.request("DELETE", url, **options)).data

    async def download_file(self, url: str, destination: Union[str, Path], headers: Optional[Dict[str, str]] = None) -> Path:
        """Stream ``url`` to ``destination``; no retries."""
        target = build_url(self.base_url, url) if self.base_url else url
        destination = Path(destination)
        async with self._client.stream("GET", target, headers=headers, timeout=self.timeout) as response:
            response.raise_for_status()
            with destination.open("wb") as fh:
                async for chunk in response.aiter_bytes():
                    fh.write(chunk)
        return destination
