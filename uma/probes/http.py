"""Probe that GETs a JSON document over HTTP."""

import logging

import aiohttp

from uma.hub.errors import ProbeError
from uma.hub.payloads import to_snapshot
from uma.hub.probe import Probe

logger = logging.getLogger(__name__)


class HTTPProbe(Probe):
    """Fetches JSON from an HTTP endpoint (Docker Engine API, NUT bridges).

    The aiohttp session is created lazily on first fetch and shared across
    fetches until close().
    """

    def __init__(
        self,
        key: str,
        url: str,
        kind: str = "generic",
        headers: dict[str, str] | None = None,
        field: str | None = None,
        timeout: float = 10.0,
    ):
        self.key = key
        self.url = url
        self.kind = kind
        self.headers = headers or {}
        self.field = field
        self.timeout = timeout
        self._http_session: aiohttp.ClientSession | None = None

    async def fetch(self):
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        try:
            async with self._http_session.get(
                self.url, headers=self.headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                if resp.status != 200:
                    raise ProbeError(self.key, f"GET {self.url} returned {resp.status}")
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ProbeError(self.key, f"GET {self.url} failed: {e}") from e

        if self.field:
            if not isinstance(data, dict) or self.field not in data:
                raise ProbeError(self.key, f"response has no field '{self.field}'")
            data = data[self.field]
        return to_snapshot(data, self.kind)

    async def close(self):
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def describe(self) -> str:
        return f"http:{self.url}"
