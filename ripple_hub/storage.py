# -*- coding: utf-8 -*-
"""
ripple_hub/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表（events / notification_queue / profiles / analysis_requests）
- 事件写入：title_key 唯一索引兜底去重（应用层先查，存储层再拦）
- 通知队列：入队、原子认领、标记已处理（processed 只会 0 -> 1）
- 过期清理：只删自动采集、公开、超过窗口且未通知过的事件
- 用户资料：只读查询（save_profile 供初始化/测试）
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

from .models import (
    AUTOMATED_SOURCES,
    Event,
    EventType,
    NotificationPreferences,
    NotificationQueueEntry,
    Profile,
    Severity,
)
from .utils import now_ms, title_fingerprint

logger = logging.getLogger(__name__)

DEDUPE_EXACT = "exact"
DEDUPE_FINGERPRINT = "fingerprint"


# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id                     TEXT PRIMARY KEY,
    title                  TEXT NOT NULL,
    title_key              TEXT NOT NULL,
    description            TEXT NOT NULL,
    event_type             TEXT NOT NULL,
    severity               TEXT NOT NULL,
    source_url             TEXT,
    source_api             TEXT,
    is_public              INTEGER DEFAULT 1,
    created_at             INTEGER NOT NULL,
    impact_analysis        TEXT,
    country                TEXT,
    city                   TEXT,
    affected_organizations TEXT,
    user_id                TEXT
);

CREATE TABLE IF NOT EXISTS profiles (
    id          TEXT PRIMARY KEY,
    email       TEXT,
    full_name   TEXT,
    preferences TEXT,
    created_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_queue (
    id          TEXT PRIMARY KEY,
    event_id    TEXT NOT NULL REFERENCES events(id),
    profile_id  TEXT REFERENCES profiles(id),
    processed   INTEGER NOT NULL DEFAULT 0,
    error       TEXT,
    created_at  INTEGER NOT NULL,
    claimed_at  INTEGER,
    claim_token TEXT
);

CREATE TABLE IF NOT EXISTS analysis_requests (
    id         TEXT PRIMARY KEY,
    event_id   TEXT NOT NULL,
    status     TEXT NOT NULL DEFAULT 'pending',
    error      TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_events_title_key ON events(title_key);
CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_queue_pending ON notification_queue(processed, created_at);
CREATE INDEX IF NOT EXISTS idx_analysis_event ON analysis_requests(event_id);
"""


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """初始化数据库并返回连接"""
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(p))
    # 性能相关 pragma
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.executescript(SCHEMA)
    await db.commit()
    return db


def dedupe_key(title: str, strategy: str = DEDUPE_EXACT) -> str:
    if strategy == DEDUPE_FINGERPRINT:
        return title_fingerprint(title)
    return title


# --------- 事件 ---------
_EVENT_COLUMNS = (
    "id, title, description, event_type, severity, source_url, source_api, is_public, "
    "created_at, impact_analysis, country, city, affected_organizations, user_id"
)


def _json_load(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("[storage] JSON 字段损坏，按空处理: %s", value[:80])
        return None


def _affected_orgs(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, dict):
        return [str(v) for v in value.values()]
    return []


def _row_to_event(row: Sequence[Any]) -> Event:
    return Event(
        id=row[0],
        title=row[1],
        description=row[2],
        event_type=EventType(row[3]),
        severity=Severity(row[4]),
        source_url=row[5] or "",
        source_api=row[6] or "",
        is_public=bool(row[7]),
        created_at=int(row[8]),
        impact_analysis=_json_load(row[9]),
        country=row[10],
        city=row[11],
        affected_organizations=_affected_orgs(_json_load(row[12])),
        user_id=row[13],
    )


async def event_exists(db: aiosqlite.Connection, title: str, strategy: str = DEDUPE_EXACT) -> bool:
    async with db.execute(
        "SELECT 1 FROM events WHERE title_key = ? LIMIT 1;", (dedupe_key(title, strategy),)
    ) as cur:
        row = await cur.fetchone()
    return row is not None


async def insert_event(db: aiosqlite.Connection, ev: Event, strategy: str = DEDUPE_EXACT) -> bool:
    """
    写入事件。title_key 冲突时不写入并返回 False（重复不算错误）。
    """
    sql = f"""
    INSERT INTO events({_EVENT_COLUMNS}, title_key)
    VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
    ON CONFLICT(title_key) DO NOTHING;
    """
    cur = await db.execute(sql, (
        ev.id, ev.title, ev.description, ev.event_type.value, ev.severity.value,
        ev.source_url, ev.source_api, int(ev.is_public), int(ev.created_at),
        json.dumps(ev.impact_analysis) if ev.impact_analysis is not None else None,
        ev.country, ev.city,
        json.dumps(ev.affected_organizations) if ev.affected_organizations else None,
        ev.user_id,
        dedupe_key(ev.title, strategy),
    ))
    inserted = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return inserted


async def get_event(db: aiosqlite.Connection, event_id: str) -> Optional[Event]:
    async with db.execute(f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?;", (event_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_event(row) if row else None


async def count_events_with_title(db: aiosqlite.Connection, title: str) -> int:
    async with db.execute("SELECT COUNT(*) FROM events WHERE title = ?;", (title,)) as cur:
        row = await cur.fetchone()
    return int(row[0])


async def set_impact_analysis(db: aiosqlite.Connection, event_id: str, analysis: Dict[str, Any]) -> bool:
    """外部分析服务的回写入口：整体替换 impact_analysis"""
    cur = await db.execute(
        "UPDATE events SET impact_analysis = ? WHERE id = ?;", (json.dumps(analysis), event_id)
    )
    updated = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return updated


async def delete_stale_events(db: aiosqlite.Connection, older_than_ms: int) -> int:
    """
    删除：公开 + 自动采集来源 + 非用户创建 + created_at < older_than_ms + 没有已处理过的通知
    顺带删掉这些事件名下未处理的队列条目，避免留下永远认领不完的孤儿条目
    """
    placeholders = ",".join("?" for _ in AUTOMATED_SOURCES)
    stale = f"""
    SELECT id FROM events
     WHERE is_public = 1
       AND user_id IS NULL
       AND source_api IN ({placeholders})
       AND created_at < ?
       AND NOT EXISTS (
           SELECT 1 FROM notification_queue q
            WHERE q.event_id = events.id AND q.processed = 1
       )
    """
    params = (*AUTOMATED_SOURCES, int(older_than_ms))
    await db.execute(
        f"DELETE FROM notification_queue WHERE processed = 0 AND event_id IN ({stale});", params
    )
    cur = await db.execute(f"DELETE FROM events WHERE id IN ({stale});", params)
    count = cur.rowcount
    await cur.close()
    await db.commit()
    return max(count, 0)


# --------- 用户资料 ---------
async def save_profile(db: aiosqlite.Connection, profile: Profile) -> None:
    await db.execute(
        """
        INSERT INTO profiles(id, email, full_name, preferences, created_at)
        VALUES(?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            email       = excluded.email,
            full_name   = excluded.full_name,
            preferences = excluded.preferences;
        """,
        (profile.id, profile.email, profile.full_name, json.dumps(profile.preferences.to_json()), now_ms()),
    )
    await db.commit()


def _row_to_profile(row: Sequence[Any]) -> Profile:
    return Profile(
        id=row[0],
        email=row[1],
        full_name=row[2],
        preferences=NotificationPreferences.from_json(_json_load(row[3])),
    )


async def get_profile(db: aiosqlite.Connection, profile_id: str) -> Optional[Profile]:
    async with db.execute(
        "SELECT id, email, full_name, preferences FROM profiles WHERE id = ?;", (profile_id,)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_profile(row) if row else None


async def list_profiles(db: aiosqlite.Connection) -> List[Profile]:
    out: List[Profile] = []
    async with db.execute("SELECT id, email, full_name, preferences FROM profiles ORDER BY created_at, id;") as cur:
        async for row in cur:
            out.append(_row_to_profile(row))
    return out


# --------- 通知队列 ---------
_QUEUE_COLUMNS = "id, event_id, profile_id, processed, error, created_at, claimed_at, claim_token"


def _row_to_entry(row: Sequence[Any]) -> NotificationQueueEntry:
    return NotificationQueueEntry(
        id=row[0],
        event_id=row[1],
        profile_id=row[2],
        processed=bool(row[3]),
        error=row[4],
        created_at=int(row[5]),
        claimed_at=row[6],
        claim_token=row[7],
    )


async def enqueue_notification(
    db: aiosqlite.Connection,
    event_id: str,
    profile_id: Optional[str] = None,
    created_at: Optional[int] = None,
) -> str:
    entry_id = str(uuid.uuid4())
    await db.execute(
        "INSERT INTO notification_queue(id, event_id, profile_id, processed, created_at) VALUES(?,?,?,0,?);",
        (entry_id, event_id, profile_id, int(created_at if created_at is not None else now_ms())),
    )
    await db.commit()
    return entry_id


async def claim_pending(
    db: aiosqlite.Connection,
    *,
    lease_ms: int = 10 * 60 * 1000,
    limit: int = 500,
    exclude: Sequence[str] = (),
) -> List[NotificationQueueEntry]:
    """
    原子认领未处理条目（UPDATE ... RETURNING），防止两个派发进程重复认领。
    认领超过 lease_ms 仍未续租的（进程崩溃）可被重新认领，旧凭证随即作废。
    exclude: 本轮已经看过的条目（例如刚释放的），不再认领。
    返回按 created_at 升序排列。
    """
    now = now_ms()
    token = uuid.uuid4().hex
    skip = ""
    if exclude:
        skip = f"AND id NOT IN ({','.join('?' for _ in exclude)})"
    sql = f"""
    UPDATE notification_queue
       SET claimed_at = ?, claim_token = ?
     WHERE id IN (
           SELECT id FROM notification_queue
            WHERE processed = 0
              AND (claimed_at IS NULL OR claimed_at < ?)
              {skip}
            ORDER BY created_at ASC, id ASC
            LIMIT ?
     )
    RETURNING {_QUEUE_COLUMNS};
    """
    params = (now, token, now - lease_ms, *exclude, int(limit))
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    await db.commit()
    entries = [_row_to_entry(r) for r in rows]
    # RETURNING 不保证顺序
    entries.sort(key=lambda e: (e.created_at, e.id))
    return entries


async def release_claim(db: aiosqlite.Connection, entry_id: str, claim_token: Optional[str] = None) -> None:
    sql = "UPDATE notification_queue SET claimed_at = NULL, claim_token = NULL WHERE id = ? AND processed = 0"
    params: tuple = (entry_id,)
    if claim_token is not None:
        sql += " AND claim_token = ?"
        params += (claim_token,)
    await db.execute(sql + ";", params)
    await db.commit()


async def renew_claim(db: aiosqlite.Connection, entry_id: str, claim_token: str) -> bool:
    """续租；认领已被别人接手（凭证变了）或条目已处理时返回 False"""
    cur = await db.execute(
        "UPDATE notification_queue SET claimed_at = ? WHERE id = ? AND claim_token = ? AND processed = 0;",
        (now_ms(), entry_id, claim_token),
    )
    renewed = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return renewed


async def mark_processed(
    db: aiosqlite.Connection,
    entry_id: str,
    error: Optional[str] = None,
    claim_token: Optional[str] = None,
) -> bool:
    """
    processed 0 -> 1，只会发生一次；已处理的不会被改写。
    带 claim_token 时只有仍持有该认领的一方能写入。
    """
    sql = "UPDATE notification_queue SET processed = 1, error = ? WHERE id = ? AND processed = 0"
    params: tuple = (error, entry_id)
    if claim_token is not None:
        sql += " AND claim_token = ?"
        params += (claim_token,)
    cur = await db.execute(sql + ";", params)
    updated = cur.rowcount == 1
    await cur.close()
    await db.commit()
    return updated


async def get_queue_entry(db: aiosqlite.Connection, entry_id: str) -> Optional[NotificationQueueEntry]:
    async with db.execute(f"SELECT {_QUEUE_COLUMNS} FROM notification_queue WHERE id = ?;", (entry_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_entry(row) if row else None


async def list_queue_entries(db: aiosqlite.Connection, event_id: Optional[str] = None) -> List[NotificationQueueEntry]:
    sql = f"SELECT {_QUEUE_COLUMNS} FROM notification_queue"
    params: tuple = ()
    if event_id is not None:
        sql += " WHERE event_id = ?"
        params = (event_id,)
    sql += " ORDER BY created_at ASC, id ASC;"
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_entry(r) for r in rows]


# --------- 影响分析出站记录 ---------
async def record_analysis_request(db: aiosqlite.Connection, event_id: str) -> str:
    request_id = str(uuid.uuid4())
    now = now_ms()
    await db.execute(
        "INSERT INTO analysis_requests(id, event_id, status, created_at, updated_at) VALUES(?,?,'pending',?,?);",
        (request_id, event_id, now, now),
    )
    await db.commit()
    return request_id


async def finish_analysis_request(
    db: aiosqlite.Connection, request_id: str, error: Optional[str] = None
) -> None:
    status = "failed" if error else "done"
    await db.execute(
        "UPDATE analysis_requests SET status = ?, error = ?, updated_at = ? WHERE id = ?;",
        (status, error, now_ms(), request_id),
    )
    await db.commit()


async def list_analysis_requests(db: aiosqlite.Connection, event_id: str) -> List[Dict[str, Any]]:
    async with db.execute(
        "SELECT id, event_id, status, error FROM analysis_requests WHERE event_id = ? ORDER BY created_at;",
        (event_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [{"id": r[0], "event_id": r[1], "status": r[2], "error": r[3]} for r in rows]


