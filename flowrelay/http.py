"""Small async facade over ``requests``."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import requests

logger = logging.getLogger(__name__)


class HttpClient:
    """Issue blocking ``requests`` calls from async code.

    Calls run in a worker thread so that one slow remote step does not stall
    other runs sharing the event loop.
    """

    def __init__(self, timeout: float = 30000, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout  # ms
        self._session = session or requests.Session()

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        data: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and return the decoded body.

        Returns parsed JSON when the response is JSON, text otherwise and
        ``None`` for an empty body.

        Raises:
            requests.RequestException: Transport failure or non-2xx status.
        """
        seconds = (timeout if timeout is not None else self.timeout) / 1000
        response = await asyncio.to_thread(
            self._session.request,
            method.upper(),
            url,
            headers=dict(headers or {}),
            params=params,
            json=json,
            data=data,
            timeout=seconds,
        )
        logger.debug(f"{method.upper()} {url} -> {response.status_code}")
        response.raise_for_status()
        return decode_body(response)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)


def decode_body(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
