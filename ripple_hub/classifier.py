# -*- coding: utf-8 -*-
"""
classifier.py
事件分类：AI 优先，关键词启发式兜底
- AI 分类（httpx 调用 chat completions），带超时；返回结构不合法 / 置信度 < 0.7 一律视为失败
- 关键词启发式：ops/keywords.yml（30s 热加载），正则兼容英文词形
- 校验降级：文本撑不起所给严重度时，降一级（只降一级）
classify() 永远不向调用方抛异常，启发式是保底结果。
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

import httpx
import yaml

from .errors import ClassificationError
from .models import ClassificationResult, EventType, Method, Severity
from .utils import compile_keyword, norm_text_for_match

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.7
HEURISTIC_CONFIDENCE = 0.5

_KEYWORDS_PATH = Path(__file__).resolve().parent / "ops" / "keywords.yml"

_SYSTEM_PROMPT = (
    "You are a financial market analyst specializing in event impact classification. "
    "Always respond with valid JSON only."
)

_USER_PROMPT = """Analyze this news event and classify it for financial market impact monitoring.

EVENT TITLE: "{title}"
EVENT DESCRIPTION: "{description}"

SEVERITY LEVELS (be very strict):
- CRITICAL: global catastrophic events that reshape markets
- HIGH: significant events with major market impact
- MEDIUM: notable events with moderate market relevance
- LOW: routine news with minimal market impact

EVENT TYPES: NATURAL_DISASTER, GEOPOLITICAL, ECONOMIC, OTHER

Respond with ONLY a JSON object:
{{"severity": "LOW|MEDIUM|HIGH|CRITICAL", "eventType": "NATURAL_DISASTER|GEOPOLITICAL|ECONOMIC|OTHER", "confidence": 0.XX, "reasoning": "..."}}"""


class KeywordConfig:
    """关键词配置，支持热加载"""

    GROUPS = {
        "natural_disaster": ("event_types", "natural_disaster"),
        "geopolitical": ("event_types", "geopolitical"),
        "economic": ("event_types", "economic"),
        "critical": ("severity", "critical"),
        "high": ("severity", "high"),
        "medium": ("severity", "medium"),
        "urgency": ("urgency_markers",),
        "scope": ("scope_indicators",),
        "magnitude": ("magnitude_indicators",),
    }

    def __init__(self, path: Optional[Union[str, Path]] = None, reload_interval: int = 30):
        self.path = Path(path) if path else _KEYWORDS_PATH
        self.reload_interval = reload_interval
        self.last_reload = 0.0
        self._mtime: Optional[float] = None
        # 编译后的正则缓存：group -> [(keyword, pattern)]
        self.patterns: Dict[str, List[Tuple[str, re.Pattern]]] = {g: [] for g in self.GROUPS}
        self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        patterns: Dict[str, List[Tuple[str, re.Pattern]]] = {}
        for group, keys in self.GROUPS.items():
            node: Any = data
            for k in keys:
                node = (node or {}).get(k) if isinstance(node, dict) else None
            words = [w for w in (node or []) if isinstance(w, str) and w.strip()]
            patterns[group] = [(w.strip().lower(), compile_keyword(w)) for w in words]

        self.patterns = patterns
        self.last_reload = time.time()
        self._mtime = self.path.stat().st_mtime
        logger.info("[classifier] 关键词加载完成: %s", self.path.name)

    def reload_if_needed(self) -> None:
        if time.time() - self.last_reload < self.reload_interval:
            return
        self.last_reload = time.time()
        try:
            if self.path.stat().st_mtime != self._mtime:
                self._load()
        except (OSError, yaml.YAMLError) as e:
            # 保留上一版关键词继续工作
            logger.error("[classifier] 关键词热加载失败: %s", e)

    def matches(self, group: str, text: str) -> List[str]:
        return [kw for kw, pat in self.patterns.get(group, []) if pat.search(text)]


_default_keywords: Optional[KeywordConfig] = None


def default_keywords() -> KeywordConfig:
    global _default_keywords
    if _default_keywords is None:
        _default_keywords = KeywordConfig()
    return _default_keywords


# ------------------------------------------------------------
# 启发式
# ------------------------------------------------------------

def _determine_event_type(text: str, kw: KeywordConfig) -> Tuple[EventType, List[str]]:
    natural = kw.matches("natural_disaster", text)
    geo = kw.matches("geopolitical", text)
    eco = kw.matches("economic", text)

    if len(natural) > len(geo) and len(natural) > len(eco):
        return EventType.NATURAL_DISASTER, natural
    if len(geo) > len(eco):
        return EventType.GEOPOLITICAL, geo
    if eco:
        return EventType.ECONOMIC, eco
    return EventType.OTHER, []


def _determine_severity(text: str, kw: KeywordConfig) -> Tuple[Severity, List[str]]:
    critical = kw.matches("critical", text)
    if critical:
        return Severity.CRITICAL, critical
    high = kw.matches("high", text) + kw.matches("urgency", text)
    if high:
        return Severity.HIGH, high
    medium = kw.matches("medium", text)
    if medium:
        return Severity.MEDIUM, medium
    return Severity.LOW, []


def heuristic_classify(title: str, description: str, kw: Optional[KeywordConfig] = None) -> ClassificationResult:
    """关键词分类，结果置信度固定 0.5"""
    kw = kw or default_keywords()
    text = norm_text_for_match(title, description)
    event_type, type_hits = _determine_event_type(text, kw)
    severity, severity_hits = _determine_severity(text, kw)
    reasoning = "Keyword-based fallback classification"
    hits = sorted(set(type_hits + severity_hits))
    if hits:
        reasoning += f" (matched: {', '.join(hits)})"
    return ClassificationResult(
        event_type=event_type,
        severity=severity,
        confidence=HEURISTIC_CONFIDENCE,
        method=Method.HEURISTIC,
        reasoning=reasoning,
    )


def severity_supported(title: str, description: str, severity: Severity, kw: Optional[KeywordConfig] = None) -> bool:
    """文本内容是否撑得起该严重度"""
    kw = kw or default_keywords()
    text = norm_text_for_match(title, description)
    critical = kw.matches("critical", text)

    if severity is Severity.CRITICAL:
        if len(critical) >= 2:
            return True
        return bool(critical) and bool(kw.matches("scope", text) or kw.matches("magnitude", text))
    if severity is Severity.HIGH:
        return bool(critical or kw.matches("high", text) or kw.matches("urgency", text))
    if severity is Severity.MEDIUM:
        return bool(
            critical
            or kw.matches("high", text)
            or kw.matches("urgency", text)
            or kw.matches("medium", text)
        )
    return True


def validate_classification(
    title: str, description: str, result: ClassificationResult, kw: Optional[KeywordConfig] = None
) -> ClassificationResult:
    """校验降级：不被文本支持时降一级，且只降一次"""
    if severity_supported(title, description, result.severity, kw):
        return result
    lowered = result.severity.downgrade()
    logger.info("[classifier] 严重度降级 %s -> %s: %s", result.severity.value, lowered.value, title[:60])
    return ClassificationResult(
        event_type=result.event_type,
        severity=lowered,
        confidence=result.confidence,
        method=result.method,
        reasoning=f"{result.reasoning}; downgraded from {result.severity.value} (not supported by text)",
    )


# ------------------------------------------------------------
# AI 分类
# ------------------------------------------------------------

_DECODER = json.JSONDecoder()


def _extract_json(text: str) -> Any:
    """
    整段就是 JSON 直接解析；否则从每个 '{' 起试 raw_decode。
    优先返回带 severity 的对象，都没有就返回第一个解析出来的。
    """
    text = text.strip()
    try:
        return json.loads(text)
    except ValueError:
        pass
    start = text.find("{")
    if start < 0:
        raise ClassificationError("no JSON object in AI response")
    first: Any = None
    while start >= 0:
        try:
            obj, end = _DECODER.raw_decode(text, start)
        except ValueError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict) and "severity" in obj:
            return obj
        if first is None:
            first = obj
        start = text.find("{", end)
    if first is None:
        raise ClassificationError("malformed JSON in AI response")
    return first


def parse_ai_response(raw: Union[str, Dict[str, Any]]) -> ClassificationResult:
    """
    解析 AI 返回的 {severity, eventType, confidence, reasoning}
    任何字段缺失 / 枚举越界 / confidence 非数字都抛 ClassificationError
    """
    if isinstance(raw, str):
        raw = _extract_json(raw)
    if not isinstance(raw, dict):
        raise ClassificationError("AI response is not an object")

    try:
        severity = Severity(raw.get("severity"))
        event_type = EventType(raw.get("eventType"))
    except ValueError:
        raise ClassificationError(
            f"invalid classification values: {raw.get('severity')!r}/{raw.get('eventType')!r}"
        ) from None

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ClassificationError(f"confidence is not a number: {confidence!r}")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ClassificationError(f"confidence out of range: {confidence!r}")

    reasoning = raw.get("reasoning", "")
    if not isinstance(reasoning, str):
        raise ClassificationError("reasoning is not a string")

    return ClassificationResult(
        event_type=event_type,
        severity=severity,
        confidence=float(confidence),
        method=Method.AI,
        reasoning=reasoning,
    )


class AIClassifierCollaborator(Protocol):
    async def classify(self, title: str, description: str) -> Union[str, Dict[str, Any]]:
        ...


class PerplexityClassifier:
    """调用 chat completions，返回模型输出的文本（由 parse_ai_response 解析）"""

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://api.perplexity.ai/chat/completions",
        model: str = "llama-3.1-sonar-small-128k-online",
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("PerplexityClassifier requires an API key")
        self._api_key = api_key
        self._endpoint = endpoint
        self._model = model
        self._client = client

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=30.0))
        return self._client

    async def classify(self, title: str, description: str) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _USER_PROMPT.format(title=title, description=description)},
            ],
            "temperature": 0.1,
            "top_p": 0.9,
            "max_tokens": 500,
        }
        try:
            r = await self._client_get().post(
                self._endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            raise ClassificationError(f"AI request failed: {e!r}") from e

        if r.status_code != 200:
            raise ClassificationError(f"AI http {r.status_code}: {(r.text or '')[:300]}")
        try:
            return r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassificationError(f"unexpected AI payload: {e!r}") from None

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class Classifier:
    def __init__(
        self,
        ai: Optional[AIClassifierCollaborator] = None,
        keywords: Optional[KeywordConfig] = None,
        timeout_sec: float = 15.0,
    ):
        self._ai = ai
        self._kw = keywords or default_keywords()
        self._timeout = timeout_sec

    async def _classify_ai(self, title: str, description: str) -> ClassificationResult:
        if self._ai is None:
            raise ClassificationError("AI classifier not configured")
        raw = await asyncio.wait_for(self._ai.classify(title, description), timeout=self._timeout)
        result = parse_ai_response(raw)
        if result.confidence < CONFIDENCE_THRESHOLD:
            raise ClassificationError(f"low confidence AI classification ({result.confidence})")
        return result

    async def classify(self, title: str, description: str) -> ClassificationResult:
        self._kw.reload_if_needed()
        try:
            result = await self._classify_ai(title, description)
            logger.info("[classifier] AI 分类: %s (%.2f) %s", result.severity.value, result.confidence, title[:60])
        except asyncio.TimeoutError:
            logger.warning("[classifier] AI 分类超时(%ss)，改用关键词: %s", self._timeout, title[:60])
            result = heuristic_classify(title, description, self._kw)
        except Exception as e:  # noqa: BLE001 - any AI failure falls back to keywords
            if self._ai is not None:
                logger.warning("[classifier] AI 分类失败，改用关键词: %s", e)
            result = heuristic_classify(title, description, self._kw)

        return validate_classification(title, description, result, self._kw)
