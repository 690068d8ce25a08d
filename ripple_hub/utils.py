"""
通用工具：
- 关键词正则编译（英文词形变化：单复数、时态）
- UTC 毫秒时间
- 日志初始化
- 文本截断 / 标题指纹
"""

import logging
import re
import time
from typing import Optional

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def compile_keyword(keyword: str) -> re.Pattern:
    """
    为英文关键词编译正则，支持词形变化匹配

    参数:
        keyword: 关键词或短语（大小写不敏感）

    返回:
        编译后的正则：词边界 + 关键词 + 可选 s/es/ed/ing 后缀。
        以标点结尾的关键词（如 "breaking:"）不加尾部词边界。
    """
    kw = keyword.strip().lower()
    head = r"\b" if re.match(r"\w", kw) else ""
    tail = r"(s|es|ed|ing)?\b" if re.search(r"\w$", kw) else ""
    return re.compile(rf"{head}{re.escape(kw)}{tail}", re.IGNORECASE)


def now_ms() -> int:
    """当前时间的 UTC 毫秒时间戳"""
    return int(time.time() * 1000)


def norm_text_for_match(title: str, description: str) -> str:
    """标题 + 描述，小写后用于关键词匹配"""
    return f"{title or ''} {description or ''}".lower()


def truncate(s: Optional[str], limit: int) -> str:
    if not s:
        return ""
    return s if len(s) <= limit else s[:limit - 3].rstrip() + "..."


def title_fingerprint(title: str) -> str:
    """小写、去标点、压缩空白后的标题，用于宽松去重"""
    lowered = (title or "").strip().lower()
    cleaned = "".join(ch if ch.isalnum() or ch.isspace() else " " for ch in lowered)
    return " ".join(cleaned.split())


def setup_logging(level: int = logging.INFO) -> None:
    """初始化根日志（可重复调用，只装一个 handler）"""
    root = logging.getLogger()
    for h in root.handlers:
        if getattr(h, "_ripple_hub", False):
            root.setLevel(level)
            return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._ripple_hub = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
