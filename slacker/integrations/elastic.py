"""Elasticsearch document store over its REST API."""

import logging
from typing import Any

import httpx

from .base import ExternalServiceError, SearchIndex

logger = logging.getLogger(__name__)


class ElasticSearchIndex(SearchIndex):
    """Stores one document per action item and accumulates its counters."""

    def __init__(
        self,
        node: str,
        index: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._index = index
        headers = {"Authorization": f"ApiKey {api_key}"} if api_key else {}
        self.http_client = http_client or httpx.AsyncClient(
            base_url=node.rstrip("/"),
            headers=headers,
            timeout=timeout,
            verify=False,
        )

    async def close(self):
        await self.http_client.aclose()

    async def _get_source(self, item_id: str) -> dict[str, Any] | None:
        response = await self.http_client.get(f"/{self._index}/_doc/{item_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("_source")

    async def upsert_document(
        self,
        item_id: str,
        document: dict[str, Any],
        counters: dict[str, int] | None = None,
    ) -> None:
        try:
            existing = await self._get_source(item_id) or {}

            body = dict(document)
            for name, value in (counters or {}).items():
                body[name] = int(existing.get(name, 0)) + value
            for name, value in existing.items():
                # Counters not touched by this update carry over
                if name.startswith("times_") and name not in body:
                    body[name] = value
            # An assigned item has been assigned at least once
            if body.get("assignee") and not body.get("times_assigned"):
                body["times_assigned"] = 1

            response = await self.http_client.put(
                f"/{self._index}/_doc/{item_id}",
                params={"timeout": "1m"},
                json=body,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExternalServiceError("search", f"index {item_id} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("search", f"index {item_id} failed: {e}") from e

        logger.debug(f"Indexed action item {item_id}")
