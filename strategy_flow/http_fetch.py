from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

import httpx


LOGGER = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Raised when an HTTP request cannot be completed."""


@dataclass(slots=True)
class FetchResponse:
    status: int
    body: object
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpFetcher(Protocol):
    async def fetch(
        self,
        *,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
    ) -> FetchResponse: ...


class HttpxFetcher:
    """HTTP collaborator backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._transport = transport

    async def fetch(
        self,
        *,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
    ) -> FetchResponse:
        verb = (method or "GET").upper()
        content = body if verb != "GET" and body else None
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(verb, url, headers=dict(headers or {}), content=content)
        except httpx.HTTPError as exc:
            raise FetchError(f"{verb} {url} failed: {exc}") from exc

        try:
            payload: object = response.json()
        except ValueError:
            LOGGER.debug("Response from %s is not JSON; keeping raw text.", url)
            payload = response.text

        return FetchResponse(
            status=response.status_code,
            body=payload,
            reason=response.reason_phrase,
        )
