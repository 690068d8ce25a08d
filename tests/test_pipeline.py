# -*- coding: utf-8 -*-
"""
tests/test_pipeline.py
一轮采集的端到端流程（本地固定数据源，不走网络）：
collector -> 去重 -> 分类 -> 闸门 -> 入库 -> 影响分析 + 通知入队
"""
import asyncio

from ripple_hub.analysis import AnalysisTrigger
from ripple_hub.classifier import Classifier
from ripple_hub.errors import AnalysisError
from ripple_hub.models import Article, ClassificationResult, EventType, Method, Severity
from ripple_hub.pipeline import Deduplicator, EventStore, IngestionPipeline, admit
from ripple_hub.sources.base import SourceAdapter
from ripple_hub.sources.static import StaticSourceAdapter
from ripple_hub.storage import (
    count_events_with_title,
    get_event,
    init_db,
    insert_event,
    list_analysis_requests,
    list_queue_entries,
)
from ripple_hub.utils import now_ms

QUAKE = Article(
    title="Major Quake Hits Region",
    description="catastrophic earthquake... emergency declared",
    source_url="https://example.com/quake",
    source_id="news_api",
)
BAKERY = Article(
    title="Local bakery opens new store",
    description="The shop sells bread and pastries.",
    source_url="https://example.com/bakery",
    source_id="finnhub_api",
)


class BrokenSource(SourceAdapter):
    source_id = "broken"

    async def fetch(self):
        raise RuntimeError("provider exploded")

    async def _fetch(self):
        return []


class RecordingAnalysis:
    def __init__(self, exc=None):
        self.exc = exc
        self.requested = []

    async def request(self, event_id):
        self.requested.append(event_id)
        if self.exc is not None:
            raise self.exc


async def build(db, articles, analysis=None, extra_sources=()):
    dedup = Deduplicator(db)
    store = EventStore(db, dedup, analysis=AnalysisTrigger(db, analysis))
    adapters = [StaticSourceAdapter(articles, source_id="news_api"), *extra_sources]
    pipeline = IngestionPipeline(db, Classifier(ai=None), store, adapters, max_workers=2)
    return pipeline, store


def test_admit_only_high_and_critical():
    def result(sev):
        return ClassificationResult(EventType.OTHER, sev, 0.5, Method.HEURISTIC)

    assert admit(result(Severity.CRITICAL))
    assert admit(result(Severity.HIGH))
    assert not admit(result(Severity.MEDIUM))
    assert not admit(result(Severity.LOW))


def test_critical_article_creates_event_analysis_and_queue_entry(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            analysis = RecordingAnalysis()
            pipeline, store = await build(db, [QUAKE], analysis)
            report = await pipeline.run()
            await store.wait_for_analysis()

            assert report.fetched == 1
            assert report.created == 1
            assert await count_events_with_title(db, QUAKE.title) == 1

            async with db.execute("SELECT id FROM events WHERE title = ?;", (QUAKE.title,)) as cur:
                (event_id,) = await cur.fetchone()
            ev = await get_event(db, event_id)
            assert ev.event_type is EventType.NATURAL_DISASTER
            assert ev.severity is Severity.CRITICAL
            assert ev.is_public is True
            assert ev.source_api == "news_api"

            entries = await list_queue_entries(db, event_id)
            assert len(entries) == 1
            assert entries[0].profile_id is None
            assert entries[0].processed is False

            assert analysis.requested == [event_id]
            reqs = await list_analysis_requests(db, event_id)
            assert [r["status"] for r in reqs] == ["done"]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_low_article_is_rejected(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [BAKERY])
            report = await pipeline.run()
            await store.wait_for_analysis()

            assert report.rejected == 1
            assert report.created == 0
            assert await count_events_with_title(db, BAKERY.title) == 0
            assert await list_queue_entries(db) == []
        finally:
            await db.close()

    asyncio.run(scenario())


def test_second_run_skips_existing_titles(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE, QUAKE])
            first = await pipeline.run()
            second = await pipeline.run()
            await store.wait_for_analysis()

            assert first.created == 1
            assert first.duplicates == 1
            assert second.created == 0
            assert second.duplicates == 2
            assert await count_events_with_title(db, QUAKE.title) == 1
            assert len(await list_queue_entries(db)) == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_failing_source_does_not_block_others(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE], extra_sources=[BrokenSource()])
            report = await pipeline.run()
            await store.wait_for_analysis()
            assert report.fetched == 1
            assert report.created == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_articles_without_description_are_dropped(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            blank = Article(title="Catastrophic flood emergency", description="  ", source_url="", source_id="news_api")
            pipeline, store = await build(db, [blank])
            report = await pipeline.run()
            assert report.fetched == 0
            assert await count_events_with_title(db, blank.title) == 0
        finally:
            await db.close()

    asyncio.run(scenario())


def test_analysis_failure_keeps_event(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE], RecordingAnalysis(exc=AnalysisError("analysis http 503")))
            report = await pipeline.run()
            await store.wait_for_analysis()

            assert report.created == 1
            assert await count_events_with_title(db, QUAKE.title) == 1
            async with db.execute("SELECT status, error FROM analysis_requests;") as cur:
                rows = await cur.fetchall()
            assert rows == [("failed", "analysis http 503")]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_unconfigured_analysis_is_recorded_as_failed(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE], analysis=None)
            await pipeline.run()
            await store.wait_for_analysis()
            async with db.execute("SELECT status, error FROM analysis_requests;") as cur:
                rows = await cur.fetchall()
            assert rows == [("failed", "analysis endpoint not configured")]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_store_create_returns_none_for_existing_title(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            _, store = await build(db, [])
            result = ClassificationResult(EventType.NATURAL_DISASTER, Severity.CRITICAL, 0.5, Method.HEURISTIC)
            first = await store.create(QUAKE, result)
            again = await store.create(QUAKE, result)
            await store.wait_for_analysis()
            assert first is not None
            assert again is None
            assert len(await list_queue_entries(db)) == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_force_refresh_cleans_stale_automated_events(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [])
            result = ClassificationResult(EventType.ECONOMIC, Severity.HIGH, 0.5, Method.HEURISTIC)
            ev = await store.create(BAKERY, result)
            await store.wait_for_analysis()
            await db.execute(
                "UPDATE events SET created_at = ? WHERE id = ?;", (now_ms() - 30 * 60 * 1000, ev.id)
            )
            await db.commit()

            assert (await pipeline.run(force_refresh=False)).cleaned == 0
            assert await get_event(db, ev.id) is not None
            report = await pipeline.run(force_refresh=True)
            assert report.cleaned == 1
            assert await get_event(db, ev.id) is None
        finally:
            await db.close()

    asyncio.run(scenario())


def test_insert_failure_is_counted_not_raised(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE])
            # events 表不可写 -> 入库失败，本轮放弃
            await db.execute("DROP TABLE events;")
            await db.commit()
            report = await pipeline.run()
            assert report.failed == 1
            assert report.created == 0
        finally:
            await db.close()

    asyncio.run(scenario())


def test_analysis_outbox_failure_still_queues_notification(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            pipeline, store = await build(db, [QUAKE], analysis=RecordingAnalysis())
            # 出站记录表不可写 -> 分析触发失败，但事件和通知都要保住
            await db.execute("DROP TABLE analysis_requests;")
            await db.commit()

            report = await pipeline.run()
            await store.wait_for_analysis()
            assert report.created == 1
            assert report.failed == 0
            assert len(await list_queue_entries(db)) == 1

            again = await pipeline.run()
            assert again.duplicates == 1
            assert len(await list_queue_entries(db)) == 1
        finally:
            await db.close()

    asyncio.run(scenario())


def test_store_refuses_low_and_medium(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            _, store = await build(db, [])
            for sev in (Severity.LOW, Severity.MEDIUM):
                result = ClassificationResult(EventType.ECONOMIC, sev, 0.9, Method.AI)
                assert await store.create(BAKERY, result) is None
            assert await count_events_with_title(db, BAKERY.title) == 0
            assert await list_queue_entries(db) == []
        finally:
            await db.close()

    asyncio.run(scenario())
