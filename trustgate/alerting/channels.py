"""
Alert Channels — Fan an alert out to in-app, push, Telegram, e-mail, SMS
and webhook.

Each channel is independent and fault-tolerant:
- In-App: Notification rows for every resolved recipient (own short session)
- Push / SMS / Telegram: handed to a pluggable sender (transport is external)
- Email: Send via SMTP (async, aiosmtplib) behind a circuit breaker
- Webhook: POST JSON to every subscription for the alert's category (httpx)

Delivery status reflects hand-off, not confirmed receipt. Dispatch runs after
the alert row is committed; a dispatcher that needs the database opens its
own short session so no connection is held across network I/O.
"""

from email.mime.text import MIMEText
from typing import Optional, Protocol, Sequence

import aiosmtplib
import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.alerting.schemas import AlertChannel, AlertRecipient, AlertRecord, TargetType
from trustgate.config import settings
from trustgate.db.models import AlertWebhook, Notification
from trustgate.services.network import validate_webhook_url
from trustgate.services.resilience import CircuitBreaker, smtp_breaker, webhook_breaker

logger = structlog.get_logger(__name__)

SMS_MAX_LENGTH = 160


class ChannelDispatcher(Protocol):
    """Protocol for alert channel dispatchers."""

    async def dispatch(
        self,
        alert: AlertRecord,
        recipients: Sequence[AlertRecipient],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> dict:
        """
        Send an alert via this channel.

        Returns:
            dict with delivery result: {"success": bool, "detail": str}
        """
        ...


class NotificationSender(Protocol):
    """Transport for push / SMS / Telegram. Implemented outside the engine."""

    async def send(self, channel: AlertChannel, alert: AlertRecord, addresses: list[str]) -> None:
        ...


class LoggingSender:
    """Default sender: records the hand-off in the log and nothing else."""

    async def send(self, channel: AlertChannel, alert: AlertRecord, addresses: list[str]) -> None:
        logger.info(
            "alert_handed_off",
            channel=channel.value,
            alert_id=str(alert.id),
            priority=alert.priority.value,
            recipients=len(addresses),
        )


class InAppDispatcher:
    """
    In-app notification — one Notification row per recipient.

    Always available (no external dependencies).
    """

    async def dispatch(self, alert, recipients, session_factory) -> dict:
        async with session_factory() as session:
            session.add_all([
                Notification(
                    recipient_type=recipient.kind,
                    recipient_id=recipient.id,
                    alert_id=alert.id,
                    category=alert.category.value,
                    title=alert.title,
                    message=alert.message,
                )
                for recipient in recipients
            ])
            await session.commit()
        logger.info("in_app_alert_created", alert_id=str(alert.id), recipients=len(recipients))
        return {"success": True, "detail": f"Stored for {len(recipients)} recipients"}


class SenderDispatcher:
    """Push, SMS and Telegram share one shape: pick addresses, hand off."""

    def __init__(self, channel: AlertChannel, sender: NotificationSender):
        self.channel = channel
        self.sender = sender

    def _addresses(self, alert: AlertRecord, recipients: Sequence[AlertRecipient]) -> list[str]:
        if self.channel == AlertChannel.PUSH:
            return [r.push_token for r in recipients if r.kind == "user" and r.push_token]
        if self.channel == AlertChannel.SMS:
            return [r.phone for r in recipients if r.phone]
        # Telegram posts to the operations channel, not to individuals
        return ["operations"]

    async def dispatch(self, alert, recipients, session_factory) -> dict:
        addresses = self._addresses(alert, recipients)
        if not addresses:
            return {"success": False, "detail": f"No {self.channel.value.lower()} recipients"}
        await self.sender.send(self.channel, alert, addresses)
        return {"success": True, "detail": f"Handed off to {len(addresses)} recipients"}


class EmailDispatcher:
    """
    Dispatch alerts via email (SMTP).

    Constructs a plain-text email with alert details.
    """

    def __init__(self, breaker: CircuitBreaker = smtp_breaker):
        self.breaker = breaker

    async def dispatch(self, alert, recipients, session_factory) -> dict:
        to_emails = sorted({r.email for r in recipients if r.email})
        if alert.target_type == TargetType.ALL_ADMINS:
            to_emails = sorted(set(to_emails) | set(settings.alert_admin_emails))
        if not to_emails:
            return {"success": False, "detail": "No recipient emails"}

        if not settings.alert_smtp_host:
            return {"success": False, "detail": "No SMTP host configured"}

        msg = MIMEText(self._build_body(alert))
        msg["Subject"] = f"[{alert.priority.value}] {alert.title}"
        msg["From"] = settings.alert_from_email
        msg["To"] = ", ".join(to_emails)

        try:
            await self.breaker.call(
                aiosmtplib.send,
                msg,
                hostname=settings.alert_smtp_host,
                port=settings.alert_smtp_port,
                username=settings.alert_smtp_user or None,
                password=settings.alert_smtp_password or None,
                start_tls=True,
            )
        except Exception as e:
            logger.error("email_dispatch_error", alert_id=str(alert.id), error=str(e))
            return {"success": False, "detail": str(e)}

        logger.info("email_alert_sent", alert_id=str(alert.id), to=len(to_emails))
        return {"success": True, "detail": f"Sent to {len(to_emails)} recipients"}

    @staticmethod
    def _build_body(alert: AlertRecord) -> str:
        body = (
            f"TrustGate — {alert.priority.value}\n"
            f"{'=' * 50}\n\n"
            f"{alert.message}\n\n"
            f"{'─' * 50}\n"
            f"Category: {alert.category.value}\n"
            f"Source: {alert.source}"
        )
        if alert.source_id:
            body += f"/{alert.source_id}"
        body += f"\nCreated: {alert.created_at.isoformat()}\n"
        return body


class WebhookDispatcher:
    """
    Dispatch alerts via HTTP webhook.

    Posts a JSON payload to every active subscription for the alert's
    category. Includes SSRF protection via URL validation.
    """

    def __init__(
        self,
        breaker: CircuitBreaker = webhook_breaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.breaker = breaker
        self.transport = transport

    async def dispatch(self, alert, recipients, session_factory) -> dict:
        async with session_factory() as session:
            result = await session.execute(select(AlertWebhook).where(AlertWebhook.is_active.is_(True)))
            urls = [
                h.url for h in result.scalars().all()
                if alert.category.value in (h.categories or [])
            ]
        if not urls:
            return {"success": False, "detail": "No webhook subscriptions"}

        payload = self._build_payload(alert)
        sent = 0
        errors: list[str] = []
        async with httpx.AsyncClient(
            timeout=settings.alert_webhook_timeout_seconds, transport=self.transport,
        ) as client:
            for url in urls:
                is_valid, reason = validate_webhook_url(url)
                if not is_valid:
                    logger.warning("webhook_ssrf_blocked", url=url, reason=reason)
                    errors.append(f"{url}: {reason}")
                    continue
                try:
                    response = await self.breaker.call(client.post, url, json=payload)
                except Exception as e:
                    logger.error("webhook_dispatch_error", alert_id=str(alert.id), url=url, error=str(e))
                    errors.append(f"{url}: {e}")
                    continue
                if response.status_code < 400:
                    sent += 1
                    logger.info("webhook_alert_sent", alert_id=str(alert.id), url=url,
                                status=response.status_code)
                else:
                    logger.warning("webhook_alert_failed", alert_id=str(alert.id), url=url,
                                   status=response.status_code)
                    errors.append(f"{url}: HTTP {response.status_code}")

        detail = f"{sent}/{len(urls)} webhooks accepted"
        if errors:
            detail += "; " + "; ".join(errors)
        return {"success": sent > 0, "detail": detail}

    @staticmethod
    def _build_payload(alert: AlertRecord) -> dict:
        return {
            "alert_id": str(alert.id),
            "category": alert.category.value,
            "priority": alert.priority.value,
            "title": alert.title,
            "message": alert.message,
            "source": alert.source,
            "source_id": alert.source_id,
            "target_type": alert.target_type.value,
            "target_id": alert.target_id,
            "escalation_level": alert.escalation_level,
            "data": alert.data,
            "created_at": alert.created_at.isoformat(),
        }


class ChannelRouter:
    """
    Routes alerts to the appropriate channel dispatcher(s).

    A failure in one channel is recorded and never stops the others.
    """

    def __init__(
        self,
        sender: Optional[NotificationSender] = None,
        dispatchers: Optional[dict[AlertChannel, ChannelDispatcher]] = None,
    ):
        sender = sender or LoggingSender()
        self._dispatchers: dict[AlertChannel, ChannelDispatcher] = {
            AlertChannel.IN_APP: InAppDispatcher(),
            AlertChannel.PUSH: SenderDispatcher(AlertChannel.PUSH, sender),
            AlertChannel.TELEGRAM: SenderDispatcher(AlertChannel.TELEGRAM, sender),
            AlertChannel.SMS: SenderDispatcher(AlertChannel.SMS, sender),
            AlertChannel.EMAIL: EmailDispatcher(),
            AlertChannel.WEBHOOK: WebhookDispatcher(),
        }
        if dispatchers:
            self._dispatchers.update(dispatchers)

    async def dispatch_alert(
        self,
        alert: AlertRecord,
        recipients: Sequence[AlertRecipient],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> dict[str, dict]:
        """
        Dispatch an alert to all its channels.

        Returns:
            Dict of channel_name → delivery result
        """
        results: dict[str, dict] = {}

        for channel in alert.channels:
            dispatcher = self._dispatchers.get(channel)
            if not dispatcher:
                results[channel.value] = {"success": False, "detail": f"Unknown channel: {channel}"}
                continue
            try:
                results[channel.value] = await dispatcher.dispatch(alert, recipients, session_factory)
            except Exception as e:
                logger.error(
                    "channel_dispatch_error",
                    channel=channel.value,
                    alert_id=str(alert.id),
                    error=str(e),
                )
                results[channel.value] = {"success": False, "detail": str(e)}

        return results
