# ripple_hub/main.py
# 串起：collector -> classifier -> store（ingest）；notification_queue -> dispatcher（dispatch）
# 两个入口各跑一轮就退出，由外部调度器（cron 等）周期性触发

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional

from .analysis import AnalysisTrigger, HttpAnalysisClient
from .classifier import Classifier, PerplexityClassifier
from .collector import build_adapters, new_http_client
from .config import load_cfg
from .models import Channel, DispatchReport, IngestReport
from .notifier import NotificationDispatcher, build_channel_adapters
from .pipeline import Deduplicator, EventStore, IngestionPipeline
from .storage import init_db
from .utils import setup_logging

logger = logging.getLogger(__name__)


def _build_classifier(cfg: Dict[str, Any], client) -> Classifier:
    c = cfg.get("classifier", {}) or {}
    ai = None
    if c.get("ai_enabled", True) and c.get("api_key"):
        ai = PerplexityClassifier(
            api_key=c["api_key"],
            endpoint=c.get("endpoint") or "https://api.perplexity.ai/chat/completions",
            model=c.get("model") or "llama-3.1-sonar-small-128k-online",
            client=client,
        )
    else:
        logger.warning("[main] PERPLEXITY_API_KEY 缺失或 AI 已关闭，只用关键词分类")
    return Classifier(ai=ai, timeout_sec=float(c.get("timeout_sec", 15)))


def _build_analysis(cfg: Dict[str, Any], db, client) -> AnalysisTrigger:
    a = cfg.get("analysis", {}) or {}
    collaborator: Optional[HttpAnalysisClient] = None
    if a.get("endpoint"):
        collaborator = HttpAnalysisClient(
            endpoint=a["endpoint"],
            api_key=a.get("api_key"),
            timeout_sec=float(a.get("timeout_sec", 30)),
            client=client,
        )
    return AnalysisTrigger(db, collaborator)


async def run_ingestion(cfg: Optional[Dict[str, Any]] = None, force_refresh: bool = False) -> IngestReport:
    cfg = cfg or load_cfg()
    p = cfg.get("pipeline", {}) or {}
    db = await init_db(p.get("db_path", "ripple.db"))
    client = new_http_client(float((cfg.get("sources") or {}).get("timeout_sec", 15)))
    try:
        dedup = Deduplicator(db, p.get("dedupe_strategy", "exact"))
        store = EventStore(
            db,
            dedup,
            analysis=_build_analysis(cfg, db, client),
            stale_minutes=int(p.get("stale_minutes", 10)),
        )
        pipeline = IngestionPipeline(
            db,
            _build_classifier(cfg, client),
            store,
            build_adapters(cfg, client),
            max_workers=int(p.get("max_workers", 4)),
        )
        report = await pipeline.run(force_refresh=force_refresh)
        # 退出前等后台分析请求落定
        await store.wait_for_analysis()
        return report
    finally:
        await client.aclose()
        await db.close()


async def run_dispatch(cfg: Optional[Dict[str, Any]] = None) -> DispatchReport:
    cfg = cfg or load_cfg()
    p = cfg.get("pipeline", {}) or {}
    n = cfg.get("notifier", {}) or {}
    db = await init_db(p.get("db_path", "ripple.db"))
    client = new_http_client(float(n.get("channel_timeout_sec", 10)))
    try:
        adapters = build_channel_adapters(cfg, client)
        dispatcher = NotificationDispatcher(
            db,
            adapters[Channel.EMAIL],
            adapters[Channel.SMS],
            dashboard_url=n.get("dashboard_url", ""),
            channel_timeout=float(n.get("channel_timeout_sec", 10)),
            lease_ms=int(n.get("claim_lease_minutes", 10)) * 60 * 1000,
        )
        return await dispatcher.drain()
    finally:
        await client.aclose()
        await db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="ripple_hub")
    parser.add_argument("command", choices=["ingest", "dispatch"])
    parser.add_argument("--force-refresh", action="store_true", help="先清理 10 分钟前未通知过的自动采集事件")
    parser.add_argument("--config", default=None, help="配置文件路径，默认 ops/config.yml")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    cfg = load_cfg(args.config)

    if args.command == "ingest":
        report = asyncio.run(run_ingestion(cfg, force_refresh=args.force_refresh))
    else:
        report = asyncio.run(run_dispatch(cfg))
    logger.info("[main] %s 完成: %s", args.command, report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
