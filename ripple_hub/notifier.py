"""
ripple_hub/notifier.py
推送模块：消费 notification_queue，按用户偏好把事件推到 Email（Resend）/ SMS（Twilio）
- 逐条原子认领（claim）、处理中后台续租；租约过期未续的条目允许被别的派发进程重新认领
- 广播条目（profile_id 为空）在派发时才展开为全部用户
- 每个渠道独立发送、独立超时；失败只记到条目的 error 上
- 处理完无论成败都 processed=1（至多一次，不自动重试）
- 凭据缺失时渠道自动降级为 stdout
"""

from __future__ import annotations

import asyncio
import html
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiosqlite
import httpx

from .errors import ChannelError
from .models import Channel, DispatchReport, Event, NotificationQueueEntry, Profile, Severity
from .storage import (
    claim_pending,
    get_event,
    get_profile,
    list_profiles,
    mark_processed,
    release_claim,
    renew_claim,
)
from .utils import truncate

logger = logging.getLogger(__name__)

EMAIL_MAX_STOCKS = 5
EMAIL_MAX_ORGS = 5
SMS_MAX_SYMBOLS = 3
SMS_DESCRIPTION_LIMIT = 100

_SEVERITY_COLORS = {
    Severity.CRITICAL: "#d9534f",
    Severity.HIGH: "#f0ad4e",
    Severity.MEDIUM: "#5bc0de",
    Severity.LOW: "#5cb85c",
}


# ------------------------------------------------------------
# 渲染
# ------------------------------------------------------------

def _stock_predictions(event: Event) -> Tuple[List[Any], List[Any]]:
    analysis = event.impact_analysis if isinstance(event.impact_analysis, dict) else {}
    preds = analysis.get("stock_predictions") or {}
    if not isinstance(preds, dict):
        return [], []
    positive = preds.get("positive") or []
    negative = preds.get("negative") or []
    return (
        positive if isinstance(positive, list) else [],
        negative if isinstance(negative, list) else [],
    )


def _stock_symbol(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("symbol") or "").strip()
    return str(entry or "").strip()


def _stock_line_html(entry: Any) -> str:
    symbol = html.escape(_stock_symbol(entry))
    if isinstance(entry, dict) and entry.get("rationale"):
        return f"<li><strong>{symbol}</strong>: {html.escape(str(entry['rationale']))}</li>"
    return f"<li><strong>{symbol}</strong></li>"


def render_email(event: Event, profile: Profile, dashboard_url: str) -> Tuple[str, str]:
    """返回 (subject, html)；所有插值文本都做 HTML 转义"""
    esc = html.escape
    severity = event.severity.value
    event_type = event.event_type.value
    subject = f"🚨 {severity} Alert: {event.title}"

    parts = [
        "<!DOCTYPE html>",
        "<html><body style=\"font-family: Arial, sans-serif; line-height: 1.6; color: #333;\">",
        "<div style=\"max-width: 600px; margin: 0 auto; padding: 20px;\">",
        f"<div style=\"background-color: {_SEVERITY_COLORS[event.severity]}; color: white; "
        f"padding: 20px; text-align: center;\"><h1>Event Alert: {esc(event_type)}</h1></div>",
        f"<p>Dear {esc(profile.full_name or 'Valued User')},</p>",
        f"<p>A <strong>{esc(severity)} severity</strong> {esc(event_type)} event has occurred in "
        f"<em>{esc(event.location)}</em>.</p>",
        f"<div><h2>{esc(event.title)}</h2><p>{esc(event.description)}</p></div>",
    ]

    positive, negative = _stock_predictions(event)
    if positive or negative:
        parts.append("<h3>Significant Stock Impact Predictions:</h3>")
        if positive:
            parts.append("<h4>📈 Positive Impact:</h4><ul>")
            parts.extend(_stock_line_html(s) for s in positive[:EMAIL_MAX_STOCKS])
            parts.append("</ul>")
        if negative:
            parts.append("<h4>📉 Negative Impact:</h4><ul>")
            parts.extend(_stock_line_html(s) for s in negative[:EMAIL_MAX_STOCKS])
            parts.append("</ul>")

    if event.affected_organizations:
        parts.append("<h3>Affected Organizations:</h3><ul>")
        parts.extend(f"<li>{esc(org)}</li>" for org in event.affected_organizations[:EMAIL_MAX_ORGS])
        parts.append("</ul>")

    analysis = event.impact_analysis if isinstance(event.impact_analysis, dict) else {}
    market_impact = analysis.get("market_impact")
    if market_impact:
        parts.append(f"<h3>Market Impact Analysis:</h3><p>{esc(str(market_impact))}</p>")

    parts.append(f"<p><a href=\"{esc(dashboard_url, quote=True)}\">View Full Details on Dashboard</a></p>")
    parts.append("<p>Stay informed,<br>The RippleEffect Team</p>")
    parts.append(
        "<p style=\"font-size: 12px; color: #666;\">This email was sent to you because you've enabled "
        "event notifications. You can manage your notification preferences in your profile settings.</p>"
    )
    parts.append("</div></body></html>")
    return subject, "\n".join(parts)


def render_sms(event: Event, dashboard_url: str) -> str:
    lines = [
        f"{event.severity.value} {event.event_type.value} alert - {event.location}",
        event.title,
        truncate(event.description, SMS_DESCRIPTION_LIMIT),
    ]
    positive, negative = _stock_predictions(event)
    up = [s for s in (_stock_symbol(e) for e in positive[:SMS_MAX_SYMBOLS]) if s]
    down = [s for s in (_stock_symbol(e) for e in negative[:SMS_MAX_SYMBOLS]) if s]
    if up:
        lines.append("Up: " + ", ".join(up))
    if down:
        lines.append("Down: " + ", ".join(down))
    lines.append(dashboard_url)
    return "\n".join(lines)


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class ChannelAdapter(Protocol):
    async def send(self, address: str, content: Any) -> Dict[str, Any]:
        ...


class _HttpAdapter:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_sec: float = 10.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout_sec

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池；读系统代理
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, trust_env=True)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class EmailAdapter(_HttpAdapter):
    """Resend HTTP API；content 为 (subject, html)"""

    URL = "https://api.resend.com/emails"

    def __init__(self, api_key: str, sender: str, client: Optional[httpx.AsyncClient] = None, timeout_sec: float = 10.0):
        super().__init__(client=client, timeout_sec=timeout_sec)
        self._api_key = api_key
        self._sender = sender

    async def send(self, address: str, content: Tuple[str, str]) -> Dict[str, Any]:
        subject, body = content
        payload = {"from": self._sender, "to": [address], "subject": subject, "html": body}
        try:
            r = await self._client_get().post(
                self.URL, json=payload, headers={"Authorization": f"Bearer {self._api_key}"}
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"resend request failed: {e!r}") from e
        if not 200 <= r.status_code < 300:
            # 只记头 300 字符
            raise ChannelError(f"resend http {r.status_code}: {(r.text or '')[:300]}")
        try:
            data = r.json()
        except ValueError:
            data = {}
        return {"id": (data or {}).get("id")}


class SmsAdapter(_HttpAdapter):
    """Twilio Messages API；content 为纯文本"""

    URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 10.0,
    ):
        super().__init__(client=client, timeout_sec=timeout_sec)
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number

    async def send(self, address: str, content: str) -> Dict[str, Any]:
        url = self.URL.format(sid=self._sid)
        data = {"To": address, "From": self._from, "Body": content}
        try:
            r = await self._client_get().post(url, data=data, auth=(self._sid, self._token))
        except httpx.HTTPError as e:
            raise ChannelError(f"twilio request failed: {e!r}") from e
        if not 200 <= r.status_code < 300:
            raise ChannelError(f"twilio http {r.status_code}: {(r.text or '')[:300]}")
        try:
            payload = r.json()
        except ValueError:
            payload = {}
        return {"id": (payload or {}).get("sid")}


class StdoutAdapter:
    def __init__(self, channel: Channel):
        self._channel = channel

    async def send(self, address: str, content: Any) -> Dict[str, Any]:
        if isinstance(content, tuple):
            content = content[0]
        print(f"\n[{self._channel.value} -> {address}]\n{content}\n")
        return {"id": f"stdout-{uuid.uuid4().hex[:8]}"}

    async def close(self):
        return


def build_channel_adapters(cfg: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> Dict[Channel, Any]:
    """按凭据构造渠道；缺凭据降级为 stdout"""
    n = cfg.get("notifier", cfg) or {}
    timeout = float(n.get("channel_timeout_sec", 10))

    if n.get("resend_api_key"):
        email: Any = EmailAdapter(n["resend_api_key"], n.get("email_from") or "", client=client, timeout_sec=timeout)
    else:
        logger.warning("[notifier] RESEND_API_KEY 缺失，email 自动降级为 stdout")
        email = StdoutAdapter(Channel.EMAIL)

    sid, token, from_number = n.get("twilio_account_sid"), n.get("twilio_auth_token"), n.get("twilio_from_number")
    if sid and token and from_number:
        sms: Any = SmsAdapter(sid, token, from_number, client=client, timeout_sec=timeout)
    else:
        logger.warning("[notifier] TWILIO 凭据缺失，sms 自动降级为 stdout")
        sms = StdoutAdapter(Channel.SMS)

    return {Channel.EMAIL: email, Channel.SMS: sms}


# ------------------------------------------------------------
# Dispatcher 主体
# ------------------------------------------------------------

class NotificationDispatcher:
    def __init__(
        self,
        db: aiosqlite.Connection,
        email_adapter: ChannelAdapter,
        sms_adapter: ChannelAdapter,
        dashboard_url: str,
        channel_timeout: float = 10.0,
        lease_ms: int = 10 * 60 * 1000,
    ):
        self._db = db
        self._adapters = {Channel.EMAIL: email_adapter, Channel.SMS: sms_adapter}
        self._dashboard_url = dashboard_url
        self._channel_timeout = channel_timeout
        self._lease_ms = lease_ms

    async def drain(self, max_entries: int = 500) -> DispatchReport:
        """
        逐条认领并处理待发条目；没有待发条目时什么都不做。
        一次只认领一条，处理期间后台续租，租约不会在发送途中过期。
        """
        report = DispatchReport()
        seen: List[str] = []
        while len(seen) < max_entries:
            claimed = await claim_pending(self._db, lease_ms=self._lease_ms, limit=1, exclude=seen)
            if not claimed:
                break
            entry = claimed[0]
            seen.append(entry.id)
            report.claimed += 1
            await self._process_entry(entry, report)
        logger.info(
            "[notifier] drain 完成 claimed=%d processed=%d skipped=%d sent=%d failed=%d",
            report.claimed, report.processed, report.skipped, report.sent, report.failed,
        )
        return report

    async def _keep_lease(self, entry: NotificationQueueEntry, lost: asyncio.Event) -> None:
        interval = self._lease_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await renew_claim(self._db, entry.id, entry.claim_token)
            except aiosqlite.Error as e:
                logger.warning("[notifier] 续租失败 entry=%s: %s", entry.id, e)
                continue
            if not renewed:
                lost.set()
                return

    async def _holds_claim(self, entry: NotificationQueueEntry, lost: asyncio.Event) -> bool:
        if lost.is_set():
            return False
        if await renew_claim(self._db, entry.id, entry.claim_token):
            return True
        lost.set()
        return False

    async def _recipients(self, entry: NotificationQueueEntry) -> Optional[List[Profile]]:
        if entry.profile_id is None:
            return await list_profiles(self._db)
        profile = await get_profile(self._db, entry.profile_id)
        return [profile] if profile else None

    async def _process_entry(self, entry: NotificationQueueEntry, report: DispatchReport) -> None:
        lost = asyncio.Event()
        keeper = asyncio.create_task(self._keep_lease(entry, lost))
        try:
            await self._deliver(entry, report, lost)
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)

    async def _deliver(self, entry: NotificationQueueEntry, report: DispatchReport, lost: asyncio.Event) -> None:
        event = await get_event(self._db, entry.event_id)
        if event is None:
            logger.warning("[notifier] 事件不存在 entry=%s event=%s，释放认领", entry.id, entry.event_id)
            await release_claim(self._db, entry.id, entry.claim_token)
            report.skipped += 1
            return

        recipients = await self._recipients(entry)
        if recipients is None:
            logger.warning("[notifier] 用户不存在 entry=%s profile=%s，释放认领", entry.id, entry.profile_id)
            await release_claim(self._db, entry.id, entry.claim_token)
            report.skipped += 1
            return

        errors: List[str] = []
        for profile in recipients:
            for channel in (Channel.EMAIL, Channel.SMS):
                if not await self._holds_claim(entry, lost):
                    # 租约被另一个派发进程接手，剩下的交给它，这里既不发也不标记
                    logger.warning("[notifier] 认领已失效 entry=%s，放弃处理", entry.id)
                    report.skipped += 1
                    return
                err = await self._send_channel(channel, event, profile, report)
                if err is None:
                    continue
                label = channel.value if entry.profile_id else f"{channel.value}:{profile.id}"
                errors.append(f"{label}: {err}")

        error = "\n".join(errors) if errors else None
        if await mark_processed(self._db, entry.id, error, claim_token=entry.claim_token):
            report.processed += 1
        else:
            logger.warning("[notifier] 标记已处理失败，认领已被接手 entry=%s", entry.id)
        if error:
            report.errors.append(error)

    async def _send_channel(
        self, channel: Channel, event: Event, profile: Profile, report: DispatchReport
    ) -> Optional[str]:
        """发送单个渠道；返回错误信息，成功或不符合条件返回 None"""
        pref = profile.preferences.for_channel(channel)
        if not (pref.enabled and pref.allows(event.severity)):
            return None

        if channel is Channel.EMAIL:
            address = profile.email
            content: Any = render_email(event, profile, self._dashboard_url)
        else:
            address = pref.phone_number
            content = render_sms(event, self._dashboard_url)
        if not address:
            logger.info("[notifier] 用户 %s 没有 %s 地址，跳过", profile.id, channel.value)
            return None

        try:
            result = await asyncio.wait_for(
                self._adapters[channel].send(address, content), timeout=self._channel_timeout
            )
        except asyncio.TimeoutError:
            report.failed += 1
            logger.error("[notifier] %s 发送超时 profile=%s event=%s", channel.value, profile.id, event.id)
            return f"timed out after {self._channel_timeout:g}s"
        except Exception as e:  # noqa: BLE001 - one channel failing never blocks the other
            report.failed += 1
            logger.error("[notifier] %s 发送失败 profile=%s event=%s: %s", channel.value, profile.id, event.id, e)
            return str(e) or e.__class__.__name__

        report.sent += 1
        logger.info("[notifier] %s 已发送 profile=%s id=%s", channel.value, profile.id, (result or {}).get("id"))
        return None
