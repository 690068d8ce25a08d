from __future__ import annotations

from typing import List, Optional

import httpx

from ..errors import SourceError
from ..models import Article, SourceId
from ..utils import now_ms
from .base import NO_DESCRIPTION, SourceAdapter, normalize_link


class FinnhubAdapter(SourceAdapter):
    source_id = SourceId.FINNHUB_API.value
    BASE_URL = "https://finnhub.io/api/v1/news"

    def __init__(
        self,
        api_key: Optional[str],
        category: str = "general",
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 15.0,
    ):
        super().__init__(client=client, timeout_sec=timeout_sec)
        self._api_key = api_key
        self._category = category

    async def _fetch(self) -> List[Article]:
        if not self._api_key:
            raise SourceError("FINNHUB_API_KEY not configured")

        params = {"category": self._category, "token": self._api_key, "_t": now_ms()}
        r = await self._client_get().get(self.BASE_URL, params=params)
        if r.status_code == 429:
            raise SourceError("Finnhub API rate limit exceeded")
        if r.status_code != 200:
            raise SourceError(f"Finnhub API error: http {r.status_code}")

        data = r.json()
        if not isinstance(data, list):
            raise SourceError("Finnhub API returned unexpected payload")

        out: List[Article] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            title = (item.get("headline") or "").strip()
            if not title:
                continue
            out.append(Article(
                title=title,
                description=item.get("summary") or NO_DESCRIPTION,
                source_url=normalize_link(item.get("url")),
                source_id=self.source_id,
            ))
        return out
