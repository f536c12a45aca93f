"""
Randomness Oracle client.

Two calls:
- create_round(queue_ref) -> round handle  (the "commit" side)
- reveal(handle) -> raw random bytes, or OracleNotReady while the oracle
  has not published the value yet

HttpRandomnessOracle speaks to an oracle gateway over HTTP:
  POST {base}/rounds          {"queue": ...}   -> {"handle": "..."}
  GET  {base}/rounds/{handle}                  -> {"value": "<hex>"}
  404 / 425 / 503, or a body without "value"   -> not ready
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from .errors import ExternalServiceError, OracleNotReady

logger = logging.getLogger("fatebox.oracle")

_NOT_READY_STATUSES = {404, 425, 503}


class RandomnessOracle(ABC):

    @abstractmethod
    async def create_round(self, queue_ref: str) -> str:
        ...

    @abstractmethod
    async def reveal(self, round_handle: str) -> bytes:
        ...


class HttpRandomnessOracle(RandomnessOracle):

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 15):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def create_round(self, queue_ref: str) -> str:
        session = await self._get_session()
        try:
            async with session.post(f"{self._base_url}/rounds", json={"queue": queue_ref}) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ExternalServiceError(f"oracle round creation failed: HTTP {resp.status} {text[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise ExternalServiceError(f"oracle unreachable: {e}") from e

        handle = data.get("handle")
        if not handle:
            raise ExternalServiceError("oracle returned no round handle")
        logger.info(f"Oracle round created: {handle} (queue={queue_ref})")
        return handle

    async def reveal(self, round_handle: str) -> bytes:
        session = await self._get_session()
        try:
            async with session.get(f"{self._base_url}/rounds/{round_handle}") as resp:
                if resp.status in _NOT_READY_STATUSES:
                    raise OracleNotReady(f"round {round_handle} not ready (HTTP {resp.status})")
                if resp.status != 200:
                    text = await resp.text()
                    raise ExternalServiceError(f"oracle reveal failed: HTTP {resp.status} {text[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise ExternalServiceError(f"oracle unreachable: {e}") from e

        value = data.get("value")
        if not value:
            raise OracleNotReady(f"round {round_handle} has no value yet")
        try:
            return bytes.fromhex(value.removeprefix("0x"))
        except ValueError as e:
            raise ExternalServiceError(f"oracle returned malformed value for {round_handle}") from e
