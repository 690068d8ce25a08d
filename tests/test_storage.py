# -*- coding: utf-8 -*-
"""
tests/test_storage.py
验证 ripple_hub/storage.py：
1) 标题唯一（exact / fingerprint 两种去重键）
2) 通知队列：原子认领、释放、processed 只会 0 -> 1
3) force refresh 清理规则
"""
import asyncio
import uuid

from ripple_hub.models import (
    ChannelPreference,
    Event,
    EventType,
    NotificationPreferences,
    Profile,
    Severity,
)
from ripple_hub.storage import (
    DEDUPE_FINGERPRINT,
    claim_pending,
    count_events_with_title,
    delete_stale_events,
    enqueue_notification,
    event_exists,
    get_event,
    get_profile,
    get_queue_entry,
    init_db,
    insert_event,
    list_profiles,
    list_queue_entries,
    mark_processed,
    release_claim,
    renew_claim,
    save_profile,
    set_impact_analysis,
)
from ripple_hub.utils import now_ms

MINUTE_MS = 60 * 1000


def make_ev(title, source_api="news_api", created_at=None, user_id=None, is_public=True):
    return Event(
        id=str(uuid.uuid4()),
        title=title,
        description="test description",
        event_type=EventType.ECONOMIC,
        severity=Severity.HIGH,
        source_url="https://example.com/" + title.replace(" ", "-"),
        source_api=source_api,
        is_public=is_public,
        created_at=created_at if created_at is not None else now_ms(),
        user_id=user_id,
    )


def test_insert_event_title_unique(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            assert await insert_event(db, make_ev("Markets tumble on rate fears"))
            assert not await insert_event(db, make_ev("Markets tumble on rate fears"))
            assert await count_events_with_title(db, "Markets tumble on rate fears") == 1
            assert await event_exists(db, "Markets tumble on rate fears")
            # exact 策略区分大小写
            assert not await event_exists(db, "markets tumble on rate fears")
        finally:
            await db.close()

    asyncio.run(scenario())


def test_fingerprint_strategy_merges_near_duplicates(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            assert await insert_event(db, make_ev("Markets Tumble!"), DEDUPE_FINGERPRINT)
            assert await event_exists(db, "markets   tumble", DEDUPE_FINGERPRINT)
            assert not await insert_event(db, make_ev("markets tumble"), DEDUPE_FINGERPRINT)
        finally:
            await db.close()

    asyncio.run(scenario())


def test_event_roundtrip_and_impact_analysis(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Oil spill closes port")
            ev.affected_organizations = ["Port Authority", "ShipCo"]
            ev.country = "Norway"
            await insert_event(db, ev)
            assert await set_impact_analysis(db, ev.id, {"market_impact": "Shipping delays"})

            got = await get_event(db, ev.id)
            assert got.title == "Oil spill closes port"
            assert got.severity is Severity.HIGH
            assert got.affected_organizations == ["Port Authority", "ShipCo"]
            assert got.impact_analysis == {"market_impact": "Shipping delays"}
            assert got.location == "Norway"
            assert await get_event(db, "missing") is None
        finally:
            await db.close()

    asyncio.run(scenario())


def test_profiles_roundtrip(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            prefs = NotificationPreferences(
                email=ChannelPreference(enabled=True, high_severity=True),
                sms=ChannelPreference(enabled=True, high_severity=True, phone_number="+15550100"),
            )
            await save_profile(db, Profile(id="u1", email="a@example.com", full_name="Ann", preferences=prefs))
            await save_profile(db, Profile(id="u2", email=None, full_name=None))

            p = await get_profile(db, "u1")
            assert p.preferences.email.enabled and p.preferences.email.high_severity
            assert p.preferences.sms.phone_number == "+15550100"
            assert [x.id for x in await list_profiles(db)] == ["u1", "u2"]
            assert await get_profile(db, "nobody") is None
        finally:
            await db.close()

    asyncio.run(scenario())


def test_mark_processed_only_once(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Bank failure spreads")
            await insert_event(db, ev)
            entry_id = await enqueue_notification(db, ev.id)

            assert await mark_processed(db, entry_id, "sms: http 500")
            # 已处理的条目不会被改写
            assert not await mark_processed(db, entry_id, None)
            entry = await get_queue_entry(db, entry_id)
            assert entry.processed is True
            assert entry.error == "sms: http 500"
        finally:
            await db.close()

    asyncio.run(scenario())


def test_claim_pending_is_exclusive_and_ordered(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Port strike halts trade")
            await insert_event(db, ev)
            second = await enqueue_notification(db, ev.id, created_at=2000)
            first = await enqueue_notification(db, ev.id, created_at=1000)
            done = await enqueue_notification(db, ev.id, created_at=500)
            await mark_processed(db, done)

            claimed = await claim_pending(db)
            assert [e.id for e in claimed] == [first, second]
            # 租约未过期，第二个派发进程认领不到
            assert await claim_pending(db) == []

            await release_claim(db, first)
            assert [e.id for e in await claim_pending(db)] == [first]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_expired_claim_can_be_reclaimed(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Refinery fire")
            await insert_event(db, ev)
            entry_id = await enqueue_notification(db, ev.id)
            assert len(await claim_pending(db)) == 1

            # 模拟派发进程崩溃：认领时间停留在 11 分钟前
            await db.execute(
                "UPDATE notification_queue SET claimed_at = ? WHERE id = ?;",
                (now_ms() - 11 * MINUTE_MS, entry_id),
            )
            await db.commit()
            assert [e.id for e in await claim_pending(db)] == [entry_id]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_reclaim_invalidates_previous_claim_token(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Pipeline rupture")
            await insert_event(db, ev)
            entry_id = await enqueue_notification(db, ev.id)

            (first,) = await claim_pending(db)
            assert await renew_claim(db, entry_id, first.claim_token)

            await db.execute(
                "UPDATE notification_queue SET claimed_at = ? WHERE id = ?;",
                (now_ms() - 11 * MINUTE_MS, entry_id),
            )
            await db.commit()
            (second,) = await claim_pending(db)
            assert second.claim_token != first.claim_token

            # 旧凭证既不能续租也不能标记已处理
            assert not await renew_claim(db, entry_id, first.claim_token)
            assert not await mark_processed(db, entry_id, None, claim_token=first.claim_token)
            assert await mark_processed(db, entry_id, None, claim_token=second.claim_token)
        finally:
            await db.close()

    asyncio.run(scenario())


def test_claim_pending_skips_excluded(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            ev = make_ev("Airport closure")
            await insert_event(db, ev)
            first = await enqueue_notification(db, ev.id, created_at=1000)
            second = await enqueue_notification(db, ev.id, created_at=2000)

            claimed = await claim_pending(db, limit=1, exclude=[first])
            assert [e.id for e in claimed] == [second]
        finally:
            await db.close()

    asyncio.run(scenario())


def test_delete_stale_events_rules(tmp_path):
    async def scenario():
        db = await init_db(tmp_path / "ripple.db")
        try:
            old = now_ms() - 11 * MINUTE_MS
            stale = make_ev("Stale automated story", created_at=old)
            stale_queued = make_ev("Stale queued story", source_api="finnhub_api", created_at=old)
            notified = make_ev("Already notified story", created_at=old)
            user_made = make_ev("User created story", created_at=old, user_id="u1")
            private = make_ev("Private story", created_at=old, is_public=False)
            rss = make_ev("Disaster feed story", source_api="gdacs_rss", created_at=old)
            fresh = make_ev("Fresh automated story")
            for ev in (stale, stale_queued, notified, user_made, private, rss, fresh):
                await insert_event(db, ev)

            await enqueue_notification(db, stale_queued.id)
            done = await enqueue_notification(db, notified.id)
            await mark_processed(db, done)

            deleted = await delete_stale_events(db, now_ms() - 10 * MINUTE_MS)
            assert deleted == 2
            assert await get_event(db, stale.id) is None
            assert await get_event(db, stale_queued.id) is None
            # 被删事件名下的未处理条目一并清掉
            assert await list_queue_entries(db, stale_queued.id) == []
            for kept in (notified, user_made, private, rss, fresh):
                assert await get_event(db, kept.id) is not None
        finally:
            await db.close()

    asyncio.run(scenario())
