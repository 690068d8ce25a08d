from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from ..errors import SourceError
from ..models import Article

logger = logging.getLogger(__name__)

NO_DESCRIPTION = "No description available"


def normalize_link(url: Optional[str]) -> str:
    """
    规范化链接：去掉 utm_*、ref/ref_src 等统计参数，去掉 fragment。
    让“同文不同链”更容易被识别为同一条。
    """
    if not url:
        return ""
    try:
        u = urlparse(url)
        qs = [
            (k, v)
            for (k, v) in parse_qsl(u.query, keep_blank_values=True)
            if not k.lower().startswith("utm_") and k.lower() not in {"ref", "ref_src"}
        ]
        return urlunparse((u.scheme, u.netloc, u.path, u.params, urlencode(qs, doseq=True), ""))
    except ValueError:
        return url


class SourceAdapter(ABC):
    """单个外部新闻源 -> 标准化 Article 列表"""

    source_id: str = ""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_sec: float = 15.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout_sec

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池，避免频繁建连
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": "ripple-hub/1.0"},
            )
        return self._client

    async def fetch(self) -> List[Article]:
        """永不抛异常：源失败只记日志并返回空列表"""
        try:
            articles = await self._fetch()
        except SourceError as e:
            logger.warning("[%s] %s", self.source_id, e)
            return []
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[%s] 抓取异常: %r", self.source_id, e)
            return []
        logger.info("[%s] fetched %d articles", self.source_id, len(articles))
        return articles

    @abstractmethod
    async def _fetch(self) -> List[Article]:
        """具体的抓取与解析；出错直接抛出，由 fetch() 兜底"""

    async def close(self) -> None:
        # 外部传入的共享 client 由创建方关闭
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
