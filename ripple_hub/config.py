# -*- coding: utf-8 -*-
"""
config.py
配置读取：DEFAULT_CFG <- ops/config.yml（可选） <- 环境变量（密钥）
只做“按 section 浅合并”，避免过度魔法。
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
ROOT = PACKAGE_DIR.parent

DEFAULT_CFG: Dict[str, Any] = {
    "pipeline": {
        "db_path": "ripple.db",
        "max_workers": 4,
        # exact: 标题完全一致（区分大小写）；fingerprint: 小写去标点后的标题
        "dedupe_strategy": "exact",
        "stale_minutes": 10,
    },
    "classifier": {
        "ai_enabled": True,
        "endpoint": "https://api.perplexity.ai/chat/completions",
        "model": "llama-3.1-sonar-small-128k-online",
        "timeout_sec": 15,
    },
    "sources": {
        "enabled": ["news_api", "finnhub_api"],
        "news_api": {"countries": ["us", "gb", "ca"], "page_size": 10},
        "finnhub_api": {"category": "general"},
        "gdacs_rss": {"url": "https://www.gdacs.org/xml/rss.xml", "max_items": 20},
        "timeout_sec": 15,
    },
    "notifier": {
        "channel_timeout_sec": 10,
        "claim_lease_minutes": 10,
        "email_from": "RippleEffect <notifications@resend.dev>",
        "dashboard_url": "http://localhost:3000/dashboard",
    },
    "analysis": {
        "endpoint": "",
        "timeout_sec": 30,
    },
}

# 环境变量 -> (section, key)
_ENV_OVERRIDES = {
    "NEWS_API_KEY": ("sources", "news_api_key"),
    "FINNHUB_API_KEY": ("sources", "finnhub_api_key"),
    "PERPLEXITY_API_KEY": ("classifier", "api_key"),
    "RESEND_API_KEY": ("notifier", "resend_api_key"),
    "TWILIO_ACCOUNT_SID": ("notifier", "twilio_account_sid"),
    "TWILIO_AUTH_TOKEN": ("notifier", "twilio_auth_token"),
    "TWILIO_FROM_NUMBER": ("notifier", "twilio_from_number"),
    "DASHBOARD_URL": ("notifier", "dashboard_url"),
    "ANALYSIS_ENDPOINT": ("analysis", "endpoint"),
    "ANALYSIS_API_KEY": ("analysis", "api_key"),
    "RIPPLE_HUB_DB": ("pipeline", "db_path"),
}


def _default_cfg_path() -> Optional[Path]:
    env = os.environ.get("RIPPLE_HUB_CONFIG", "").strip()
    if env:
        return Path(env)
    for p in (ROOT / "ops" / "config.yml", PACKAGE_DIR / "ops" / "config.yml"):
        if p.exists():
            return p
    return None


def load_cfg(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """读取配置；文件不存在或解析失败就用默认"""
    out = copy.deepcopy(DEFAULT_CFG)
    data: Dict[str, Any] = {}
    cfg_path = Path(path) if path else _default_cfg_path()
    if cfg_path is not None and cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
            for section, values in data.items():
                if isinstance(values, dict) and isinstance(out.get(section), dict):
                    out[section] = {**out[section], **values}
                else:
                    out[section] = values
        except (OSError, yaml.YAMLError, AttributeError) as e:
            logger.error("[config] 读取 %s 失败，使用默认。err=%s", cfg_path, e)
            out, data = copy.deepcopy(DEFAULT_CFG), {}

    # 环境变量覆盖默认值；配置文件里显式写了就以配置为准
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if not value:
            continue
        file_section = data.get(section)
        if isinstance(file_section, dict) and key in file_section:
            continue
        out.setdefault(section, {})[key] = value
    return out
