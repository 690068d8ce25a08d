# -*- coding: utf-8 -*-
"""
tests/test_main.py
入口冒烟：无数据源 / 无凭据时 ingest、dispatch 都能跑完一轮
"""
import asyncio

from ripple_hub.main import main, run_dispatch, run_ingestion


def offline_cfg(tmp_path):
    return {
        "pipeline": {"db_path": str(tmp_path / "ripple.db"), "max_workers": 2},
        "classifier": {"ai_enabled": False},
        "sources": {"enabled": []},
        "notifier": {"dashboard_url": "http://localhost/dashboard"},
        "analysis": {},
    }


def test_run_ingestion_and_dispatch_offline(tmp_path):
    cfg = offline_cfg(tmp_path)
    ingest = asyncio.run(run_ingestion(cfg, force_refresh=True))
    assert ingest.fetched == 0
    assert ingest.cleaned == 0

    dispatch = asyncio.run(run_dispatch(cfg))
    assert dispatch.claimed == 0
    assert (tmp_path / "ripple.db").exists()


def test_cli_dispatch(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(f"pipeline:\n  db_path: {tmp_path / 'cli.db'}\n", encoding="utf-8")
    for name in ("RESEND_API_KEY", "TWILIO_ACCOUNT_SID", "RIPPLE_HUB_DB"):
        monkeypatch.delenv(name, raising=False)
    assert main(["dispatch", "--config", str(cfg_path)]) == 0
    assert (tmp_path / "cli.db").exists()
