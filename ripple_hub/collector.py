from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .models import Article, SourceId
from .sources.base import SourceAdapter
from .sources.finnhub import FinnhubAdapter
from .sources.gdacs import GdacsRssAdapter
from .sources.newsapi import NewsApiAdapter

logger = logging.getLogger(__name__)


def new_http_client(timeout_sec: float = 15.0) -> httpx.AsyncClient:
    """所有数据源共用一个 AsyncClient，避免频繁建连"""
    return httpx.AsyncClient(timeout=timeout_sec, headers={"User-Agent": "ripple-hub/1.0"})


def build_adapters(cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> List[SourceAdapter]:
    """
    按 cfg["sources"]["enabled"] 构造数据源，未知类型跳过并记日志。
    """
    src_cfg = cfg.get("sources", {}) or {}
    timeout = float(src_cfg.get("timeout_sec", 15))
    adapters: List[SourceAdapter] = []

    for source_id in src_cfg.get("enabled") or []:
        sid = (source_id or "").strip().lower()
        opts = src_cfg.get(sid) or {}
        if sid == SourceId.NEWS_API.value:
            adapters.append(NewsApiAdapter(
                api_key=src_cfg.get("news_api_key"),
                countries=opts.get("countries") or ("us", "gb", "ca"),
                page_size=int(opts.get("page_size", 10)),
                client=client,
                timeout_sec=timeout,
            ))
        elif sid == SourceId.FINNHUB_API.value:
            adapters.append(FinnhubAdapter(
                api_key=src_cfg.get("finnhub_api_key"),
                category=opts.get("category", "general"),
                client=client,
                timeout_sec=timeout,
            ))
        elif sid == SourceId.GDACS_RSS.value:
            adapters.append(GdacsRssAdapter(
                url=opts.get("url", "https://www.gdacs.org/xml/rss.xml"),
                max_items=int(opts.get("max_items", 20)),
                client=client,
                timeout_sec=timeout,
            ))
        else:
            logger.warning("[collector] 未知类型: %s，跳过", source_id)

    logger.info("[collector] 已启用 %d 个数据源", len(adapters))
    return adapters


async def collect(adapters: Sequence[SourceAdapter]) -> List[Article]:
    """
    并发抓取所有数据源；单个源失败只贡献 0 条，不影响其它源。
    缺标题或描述的文章直接丢弃。
    """
    results = await asyncio.gather(*(a.fetch() for a in adapters), return_exceptions=True)

    articles: List[Article] = []
    for adapter, res in zip(adapters, results):
        if isinstance(res, BaseException):
            # fetch() 自己不抛；这里兜住自定义数据源的意外异常
            logger.error("[collector] %s 异常: %r", adapter.source_id, res)
            continue
        for art in res:
            if not (art.title or "").strip() or not (art.description or "").strip():
                logger.info("[collector] 跳过缺少标题或描述的文章 (%s)", adapter.source_id)
                continue
            articles.append(art)

    logger.info("[collector] 本轮共 %d 篇文章", len(articles))
    return articles
