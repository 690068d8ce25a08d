# -*- coding: utf-8 -*-
"""
models.py
事件管线的数据模型：
- Article：采集器产出的标准化文章（内存中流转，不单独入库）
- ClassificationResult：分类结果（折叠进 Event，不单独入库）
- Event / NotificationQueueEntry：持久化对象，字段与 storage.py 的表结构一一对应
- Profile / NotificationPreferences：用户与推送偏好（账号子系统拥有，这里只读）
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def downgrade(self) -> "Severity":
        """降一级；LOW 已是最低档，保持不变"""
        return _SEVERITY_ORDER[max(self.rank - 1, 0)]


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class EventType(str, Enum):
    NATURAL_DISASTER = "NATURAL_DISASTER"
    GEOPOLITICAL = "GEOPOLITICAL"
    ECONOMIC = "ECONOMIC"
    OTHER = "OTHER"


class SourceId(str, Enum):
    NEWS_API = "news_api"
    FINNHUB_API = "finnhub_api"
    GDACS_RSS = "gdacs_rss"
    STATIC = "static"


# 自动采集源：retention 清理只会删除这些来源的事件
AUTOMATED_SOURCES = (SourceId.NEWS_API.value, SourceId.FINNHUB_API.value)


class Method(str, Enum):
    AI = "ai"
    HEURISTIC = "heuristic"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass
class Article:
    title: str
    description: str
    source_url: str
    source_id: str


@dataclass
class ClassificationResult:
    event_type: EventType
    severity: Severity
    confidence: float
    method: Method
    reasoning: str = ""

    def __post_init__(self):
        # 置信度必须落在 [0,1]
        c = float(self.confidence)
        if c != c or c < 0.0 or c > 1.0:
            raise ValueError(f"confidence out of range: {self.confidence!r}")
        self.confidence = c


@dataclass
class Event:
    id: str
    # 标题即去重键（title_key 由 storage 按去重策略计算）
    title: str
    description: str
    event_type: EventType
    severity: Severity
    source_url: str
    source_api: str
    is_public: bool
    # 创建时间（UTC，毫秒）
    created_at: int
    # 外部分析服务回写的不透明 JSON，本管线只读
    impact_analysis: Optional[Dict[str, Any]] = None
    country: Optional[str] = None
    city: Optional[str] = None
    affected_organizations: List[str] = field(default_factory=list)
    # 用户手工创建的事件才有 user_id
    user_id: Optional[str] = None

    @property
    def location(self) -> str:
        if self.city and self.country:
            return f"{self.city}, {self.country}"
        return self.country or self.city or "Unknown Location"


@dataclass
class NotificationQueueEntry:
    id: str
    event_id: str
    # None 表示“广播”：收件人在派发时再解析
    profile_id: Optional[str]
    processed: bool
    error: Optional[str]
    created_at: int
    claimed_at: Optional[int] = None
    # 本次认领的凭证；续租、标记已处理都要带上它
    claim_token: Optional[str] = None


@dataclass
class ChannelPreference:
    enabled: bool = False
    high_severity: bool = False
    medium_severity: bool = False
    low_severity: bool = False
    phone_number: Optional[str] = None

    def allows(self, severity: Severity) -> bool:
        # 偏好只有三档开关，CRITICAL 跟随 highSeverity
        if severity in (Severity.HIGH, Severity.CRITICAL):
            return self.high_severity
        if severity is Severity.MEDIUM:
            return self.medium_severity
        return self.low_severity

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "ChannelPreference":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            high_severity=bool(data.get("highSeverity", False)),
            medium_severity=bool(data.get("mediumSeverity", False)),
            low_severity=bool(data.get("lowSeverity", False)),
            phone_number=(data.get("phoneNumber") or None),
        )

    def to_json(self) -> Dict[str, Any]:
        out = {
            "enabled": self.enabled,
            "highSeverity": self.high_severity,
            "mediumSeverity": self.medium_severity,
            "lowSeverity": self.low_severity,
        }
        if self.phone_number is not None:
            out["phoneNumber"] = self.phone_number
        return out


@dataclass
class NotificationPreferences:
    email: ChannelPreference = field(default_factory=ChannelPreference)
    sms: ChannelPreference = field(default_factory=ChannelPreference)

    def for_channel(self, channel: Channel) -> ChannelPreference:
        return self.email if channel is Channel.EMAIL else self.sms

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "NotificationPreferences":
        """解析 profiles.preferences 里的 {"notifications": {"email": {...}, "sms": {...}}}"""
        notifications = (data or {}).get("notifications") or {}
        return cls(
            email=ChannelPreference.from_json(notifications.get("email")),
            sms=ChannelPreference.from_json(notifications.get("sms")),
        )

    def to_json(self) -> Dict[str, Any]:
        return {"notifications": {"email": self.email.to_json(), "sms": self.sms.to_json()}}


@dataclass
class Profile:
    id: str
    email: Optional[str]
    full_name: Optional[str]
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)


@dataclass
class IngestReport:
    fetched: int = 0
    created: int = 0
    duplicates: int = 0
    rejected: int = 0
    failed: int = 0
    cleaned: int = 0


@dataclass
class DispatchReport:
    claimed: int = 0
    processed: int = 0
    skipped: int = 0
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
