from __future__ import annotations

import random
from typing import List, Optional, Sequence

import httpx

from ..errors import SourceError
from ..models import Article, SourceId
from ..utils import now_ms
from .base import NO_DESCRIPTION, SourceAdapter, normalize_link


class NewsApiAdapter(SourceAdapter):
    """newsapi.org top-headlines，每次随机换一个国家以增加多样性"""

    source_id = SourceId.NEWS_API.value
    BASE_URL = "https://newsapi.org/v2/top-headlines"

    def __init__(
        self,
        api_key: Optional[str],
        countries: Sequence[str] = ("us", "gb", "ca"),
        page_size: int = 10,
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 15.0,
    ):
        super().__init__(client=client, timeout_sec=timeout_sec)
        self._api_key = api_key
        self._countries = list(countries) or ["us"]
        self._page_size = page_size

    async def _fetch(self) -> List[Article]:
        if not self._api_key:
            raise SourceError("NEWS_API_KEY not configured")

        country = random.choice(self._countries)
        params = {
            "country": country,
            "pageSize": self._page_size,
            # 时间戳参数，绕过缓存
            "_t": now_ms(),
        }
        r = await self._client_get().get(self.BASE_URL, params=params, headers={"X-Api-Key": self._api_key})
        if r.status_code == 429:
            raise SourceError("News API rate limit exceeded")
        if r.status_code != 200:
            raise SourceError(f"News API error: http {r.status_code}")

        payload = r.json()
        if not isinstance(payload, dict) or payload.get("status", "ok") != "ok":
            raise SourceError(f"News API returned error payload: {str(payload)[:200]}")
        out: List[Article] = []
        for item in payload.get("articles") or []:
            if not isinstance(item, dict):
                continue
            title = (item.get("title") or "").strip()
            if not title:
                continue
            out.append(Article(
                title=title,
                description=item.get("description") or item.get("content") or NO_DESCRIPTION,
                source_url=normalize_link(item.get("url")),
                source_id=self.source_id,
            ))
        return out
