# -*- coding: utf-8 -*-
"""
analysis.py
影响分析触发：HIGH/CRITICAL 事件入库后异步请求外部分析服务
- 先写 analysis_requests 出站记录（pending），再后台调用，结果回写 done/failed
- 失败只记录，不影响事件本身（事件已落库）
- 分析结果由外部服务自行回写 events.impact_analysis（storage.set_impact_analysis）
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Set

import aiosqlite
import httpx

from .errors import AnalysisError
from .storage import finish_analysis_request, record_analysis_request

logger = logging.getLogger(__name__)


class AnalysisCollaborator(Protocol):
    async def request(self, event_id: str) -> None:
        ...


class HttpAnalysisClient:
    """POST {"event_id": ...} 到分析服务"""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout_sec: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not endpoint:
            raise ValueError("HttpAnalysisClient requires an endpoint")
        self._endpoint = endpoint
        self._api_key = api_key
        self._timeout = timeout_sec
        self._client = client

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def request(self, event_id: str) -> None:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            r = await self._client_get().post(self._endpoint, json={"event_id": event_id}, headers=headers)
        except httpx.HTTPError as e:
            raise AnalysisError(f"analysis request failed: {e!r}") from e
        if not 200 <= r.status_code < 300:
            raise AnalysisError(f"analysis http {r.status_code}: {(r.text or '')[:300]}")

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AnalysisTrigger:
    def __init__(self, db: aiosqlite.Connection, collaborator: Optional[AnalysisCollaborator] = None):
        self._db = db
        self._collaborator = collaborator
        self._tasks: Set[asyncio.Task] = set()

    async def request(self, event_id: str) -> str:
        """写出站记录并在后台发起调用；立即返回出站记录 id"""
        request_id = await record_analysis_request(self._db, event_id)
        task = asyncio.create_task(self._run(request_id, event_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return request_id

    async def _run(self, request_id: str, event_id: str) -> None:
        error: Optional[str] = None
        if self._collaborator is None:
            error = "analysis endpoint not configured"
            logger.warning("[analysis] 未配置分析服务，跳过 event=%s", event_id)
        else:
            try:
                await self._collaborator.request(event_id)
                logger.info("[analysis] 已触发影响分析 event=%s", event_id)
            except Exception as e:  # noqa: BLE001 - enrichment failure never fails ingestion
                error = str(e) or e.__class__.__name__
                logger.error("[analysis] 触发失败 event=%s: %s", event_id, error)
        try:
            await finish_analysis_request(self._db, request_id, error)
        except aiosqlite.Error as e:
            logger.error("[analysis] 出站记录更新失败 request=%s: %s", request_id, e)

    async def wait(self) -> None:
        """等所有后台分析请求结束（优雅退出 / 测试）"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
