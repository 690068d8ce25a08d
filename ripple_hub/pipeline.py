# -*- coding: utf-8 -*-
"""
pipeline.py
采集一轮：collector -> 去重 -> 分类 -> 严重度闸门 -> 入库 -> 影响分析 + 通知入队
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional, Sequence

import aiosqlite

from .analysis import AnalysisTrigger
from .classifier import Classifier
from .collector import collect
from .models import Article, ClassificationResult, Event, IngestReport, Severity
from .sources.base import SourceAdapter
from .storage import DEDUPE_EXACT, delete_stale_events, enqueue_notification, event_exists, insert_event
from .utils import now_ms

logger = logging.getLogger(__name__)

ADMITTED_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)
STALE_MINUTES = 10


def admit(result: ClassificationResult) -> bool:
    """只放行 HIGH / CRITICAL；LOW / MEDIUM 直接丢弃，不入库、不重试"""
    return result.severity in ADMITTED_SEVERITIES


class Deduplicator:
    def __init__(self, db: aiosqlite.Connection, strategy: str = DEDUPE_EXACT):
        self._db = db
        self.strategy = strategy

    async def exists(self, title: str) -> bool:
        return await event_exists(self._db, title, self.strategy)


class EventStore:
    def __init__(
        self,
        db: aiosqlite.Connection,
        dedup: Deduplicator,
        analysis: Optional[AnalysisTrigger] = None,
        stale_minutes: int = STALE_MINUTES,
    ):
        self._db = db
        self.dedup = dedup
        self._analysis = analysis or AnalysisTrigger(db)
        self._stale_minutes = stale_minutes

    async def create(self, article: Article, result: ClassificationResult) -> Optional[Event]:
        """
        入库并触发下游。严重度不够、或标题已存在（含插入时撞唯一索引）返回 None。
        先入通知队列再触发影响分析；分析出站记录写失败只记日志，事件照常算创建成功。
        """
        if not admit(result):
            logger.info("[store] 拒绝 %s 事件: %s", result.severity.value, article.title[:60])
            return None
        if await self.dedup.exists(article.title):
            logger.info("[store] 事件已存在: %s", article.title[:60])
            return None

        event = Event(
            id=str(uuid.uuid4()),
            title=article.title,
            description=article.description,
            event_type=result.event_type,
            severity=result.severity,
            source_url=article.source_url,
            source_api=article.source_id,
            is_public=True,
            created_at=now_ms(),
        )
        if not await insert_event(self._db, event, self.dedup.strategy):
            # 两次检查之间被别的 worker 抢先写入，唯一索引拦下
            logger.info("[store] 唯一索引拦截重复标题: %s", article.title[:60])
            return None

        logger.info("[store] 入库: %s (%s/%s)", event.title[:60], event.severity.value, event.event_type.value)

        await enqueue_notification(self._db, event.id)
        try:
            await self._analysis.request(event.id)
        except aiosqlite.Error as e:
            logger.error("[store] 影响分析出站记录写入失败 event=%s: %s", event.id, e)
        return event

    async def cleanup_stale(self, force_refresh: bool) -> int:
        if not force_refresh:
            return 0
        cutoff = now_ms() - self._stale_minutes * 60 * 1000
        count = await delete_stale_events(self._db, cutoff)
        logger.info("[store] force refresh 清理旧事件 %d 条", count)
        return count

    async def wait_for_analysis(self) -> None:
        await self._analysis.wait()


class IngestionPipeline:
    def __init__(
        self,
        db: aiosqlite.Connection,
        classifier: Classifier,
        store: EventStore,
        adapters: Sequence[SourceAdapter],
        max_workers: int = 4,
    ):
        self._db = db
        self._classifier = classifier
        self._store = store
        # 与 EventStore 共用同一去重策略
        self.dedup = store.dedup
        self._adapters = list(adapters)
        self._max_workers = max(1, int(max_workers))

    async def _process_article(self, article: Article, report: IngestReport) -> None:
        try:
            if await self.dedup.exists(article.title):
                report.duplicates += 1
                logger.info("[pipeline] 已存在，跳过: %s", article.title[:60])
                return

            result = await self._classifier.classify(article.title, article.description)
            if not admit(result):
                report.rejected += 1
                logger.info("[pipeline] 丢弃 %s 事件: %s", result.severity.value, article.title[:60])
                return

            event = await self._store.create(article, result)
            if event is None:
                report.duplicates += 1
            else:
                report.created += 1
        except aiosqlite.Error as e:
            # 入库失败：本轮放弃，下一轮重新抓到再试
            report.failed += 1
            logger.error("[pipeline] 入库失败: %s err=%s", article.title[:60], e)

    async def run(self, force_refresh: bool = False) -> IngestReport:
        report = IngestReport()
        report.cleaned = await self._store.cleanup_stale(force_refresh)

        articles = await collect(self._adapters)
        report.fetched = len(articles)

        sem = asyncio.Semaphore(self._max_workers)

        async def worker(art: Article) -> None:
            async with sem:
                await self._process_article(art, report)

        await asyncio.gather(*(worker(a) for a in articles))
        logger.info(
            "[pipeline] 本轮完成 fetched=%d created=%d duplicates=%d rejected=%d failed=%d",
            report.fetched, report.created, report.duplicates, report.rejected, report.failed,
        )
        return report
