"""Model catalog discovery.

Each configured path of the remote site renders a ``<select id="select_model">``
listing the models it serves. A refresh fetches every path concurrently,
tags the option values with the path's group, and swaps the stored catalog
in one step. Paths fail independently; only an empty union fails the refresh.
"""

import asyncio
import logging
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from browser import get_user_agent
from config import CATALOG_CACHE_KEY, SELECTORS, settings
from database import CatalogStore, ModelRecord
from errors import CatalogRefreshError, UpstreamFetchError

logger = logging.getLogger(__name__)


def parse_model_options(html: str, group: str) -> list[ModelRecord]:
    soup = BeautifulSoup(html, "html.parser")
    select = soup.select_one(SELECTORS["model_select"])
    if select is None:
        return []
    models = []
    for option in select.find_all("option"):
        value = (option.get("value") or "").strip()
        if value:
            models.append(ModelRecord(id=value, group=group))
    return models


class CatalogRefresher:
    def __init__(self, store: CatalogStore, paths=None, base_url=None, client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.paths = paths if paths is not None else settings.model_paths
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")
        self._client = client
        self._inflight: Optional[asyncio.Task] = None

    async def fetch_models_from_path(self, client: httpx.AsyncClient, path: str) -> list[ModelRecord]:
        url = f"{self.base_url}/{path}/"
        headers = {"Accept": "text/html", "User-Agent": get_user_agent()}
        try:
            response = await client.get(url, headers=headers, timeout=settings.FETCH_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamFetchError(path, f"Failed to fetch models from {path}: {e}") from e

        models = parse_model_options(response.text, path.lower())
        if not models:
            logger.info(f"No model selector options found for {path}")
        else:
            logger.debug(f"Fetched {len(models)} models from {path}")
        return models

    async def _fetch_all(self) -> list[ModelRecord]:
        if self._client is not None:
            results = await asyncio.gather(
                *(self.fetch_models_from_path(self._client, p) for p in self.paths),
                return_exceptions=True,
            )
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                results = await asyncio.gather(
                    *(self.fetch_models_from_path(client, p) for p in self.paths),
                    return_exceptions=True,
                )

        seen = {}
        for path, result in zip(self.paths, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Model discovery failed for {path}: {result}")
                continue
            for record in result:
                if record.id in seen:
                    logger.info(f"Model {record.id} listed by both {seen[record.id].group} and {record.group}; keeping {seen[record.id].group}")
                    continue
                seen[record.id] = record
        return list(seen.values())

    async def _refresh(self) -> list[ModelRecord]:
        models = await self._fetch_all()
        if not models:
            raise CatalogRefreshError("No models could be discovered from any configured path")

        # sqlite writes run off the event loop
        records = await asyncio.to_thread(self.store.replace_models, models)
        await asyncio.to_thread(
            self.store.set_cache,
            CATALOG_CACHE_KEY,
            {"timestamp": records[0].updated_at, "count": len(records)},
            settings.MODEL_CACHE_DAYS,
        )
        logger.info(f"Catalog refreshed: {len(records)} models from {len(self.paths)} paths")
        return records

    async def refresh(self) -> list[ModelRecord]:
        """Refresh the catalog; concurrent callers share one in-flight refresh."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._inflight)

    async def get_models_list(self, force_refresh: bool = False) -> list[ModelRecord]:
        if not force_refresh and self.store.get_cache(CATALOG_CACHE_KEY) is not None:
            cached = self.store.get_models()
            if cached:
                logger.debug("Using cached models")
                return cached

        logger.info("Fetching fresh models from remote site")
        try:
            return await self.refresh()
        except CatalogRefreshError:
            stale = self.store.get_models()
            if stale:
                logger.warning(f"Catalog refresh failed, serving {len(stale)} stale models")
                return stale
            raise
