"""
GDACS 灾害 RSS（feedparser 解析）
"""

from __future__ import annotations

from typing import List, Optional

import feedparser
import httpx

from ..errors import SourceError
from ..models import Article, SourceId
from .base import NO_DESCRIPTION, SourceAdapter, normalize_link


def parse_gdacs_feed(text: str, max_items: int = 20) -> List[Article]:
    feed = feedparser.parse(text)
    out: List[Article] = []
    # 限制一次处理数量，避免超长列表引发抖动
    for entry in feed.get("entries", [])[:max_items]:
        title = (entry.get("title") or "").strip()
        if not title:
            continue
        out.append(Article(
            title=title,
            description=(entry.get("summary") or entry.get("description") or NO_DESCRIPTION).strip(),
            source_url=normalize_link(entry.get("link") or entry.get("id")),
            source_id=SourceId.GDACS_RSS.value,
        ))
    return out


class GdacsRssAdapter(SourceAdapter):
    source_id = SourceId.GDACS_RSS.value

    def __init__(
        self,
        url: str = "https://www.gdacs.org/xml/rss.xml",
        max_items: int = 20,
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 15.0,
    ):
        super().__init__(client=client, timeout_sec=timeout_sec)
        self._url = url
        self._max_items = max_items

    async def _fetch(self) -> List[Article]:
        r = await self._client_get().get(self._url)
        if r.status_code != 200:
            raise SourceError(f"GDACS 响应失败 status={r.status_code}")
        return parse_gdacs_feed(r.text, self._max_items)
