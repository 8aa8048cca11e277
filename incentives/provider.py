"""
Position/pool data provider interface and indexer REST implementation.

The provider is the only place that talks to the chain indexer. Everything it
returns is raw JSON; validation happens in ``incentives.schemas``.
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Protocol

import requests
from dotenv import load_dotenv

from config.settings import Settings, settings as default_settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("provider.indexer")


class PositionDataProvider(Protocol):
    """
    Interface for position and pool data sources.

    Implementations:
    - IndexerProvider: REST indexer in front of the chain (current)
    - Test doubles: in-memory providers in tests/conftest.py
    """

    async def get_positions(self, address: str) -> List[Dict[str, Any]]:
        """
        Positions owned by ``address``.

        Each item carries id, liquidityValueUSD, tickLower, tickUpper,
        currentTick and entryTimestamp.
        """
        ...

    async def get_all_positions(self) -> List[Dict[str, Any]]:
        """Every active position in the program, for ranking."""
        ...

    async def get_pool_state(self) -> Dict[str, Any]:
        """Pool totals: totalPoolLiquidityUSD and currentTick."""
        ...


class IndexerProvider:
    """
    REST implementation against the position indexer.

    ``requests`` is blocking, so each call runs on a worker thread. A
    semaphore bounds concurrent upstream requests, including worker threads
    whose caller already gave up, and every request carries a timeout.
    """

    def __init__(self, config: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self._settings = config or default_settings
        self._base_url = self._settings.indexer_base_url.rstrip("/")
        self._api_key = self._settings.indexer_api_key or os.getenv("INDEXER_API_KEY")
        self._session = session or requests.Session()
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_requests)

    def _get_headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def _get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        response = self._session.get(
            f"{self._base_url}/{endpoint}",
            headers=self._get_headers(),
            params=params,
            timeout=self._settings.request_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    async def _request(self, endpoint: str, params: Optional[dict] = None) -> Any:
        # Slot is held until the worker thread finishes
        await self._semaphore.acquire()
        logger.debug(f"GET {endpoint} {params or ''}")
        call = asyncio.ensure_future(asyncio.to_thread(self._get, endpoint, params))
        call.add_done_callback(self._release_slot)
        return await asyncio.shield(call)

    def _release_slot(self, call: asyncio.Future) -> None:
        self._semaphore.release()
        if not call.cancelled():
            call.exception()

    async def get_positions(self, address: str) -> List[Dict[str, Any]]:
        data = await self._request("positions", {"owner": address.lower()})
        return _unwrap(data, "positions")

    async def get_all_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("positions", {"active": "true"})
        return _unwrap(data, "positions")

    async def get_pool_state(self) -> Dict[str, Any]:
        data = await self._request(f"pools/{self._settings.pool_address}")
        if isinstance(data, dict) and "pool" in data:
            return data["pool"]
        return data

    def close(self) -> None:
        self._session.close()


def _unwrap(data: Any, key: str) -> List[Dict[str, Any]]:
    """Accept either a bare list or ``{key: [...]}``."""
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise TypeError(f"Expected a list of {key}, got {type(data).__name__}")
    return data
