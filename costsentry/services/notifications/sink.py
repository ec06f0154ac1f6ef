"""
Notification sinks for newly detected anomalies.

Delivery is fire-and-forget from the sync's point of view: a sink failure is
logged and never changes a SyncResult.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from costsentry.core.config import Settings, get_settings
from costsentry.schemas.anomalies import ACCOUNT_TOTAL, AnomalyEvent, Severity

logger = structlog.get_logger()


class NotificationSink(ABC):

    @abstractmethod
    async def notify(self, event: AnomalyEvent) -> bool:
        """Deliver one event. Returns False when delivery failed."""


class LoggingNotificationSink(NotificationSink):
    """Writes events to the structured log. Used when Slack is not configured."""

    async def notify(self, event: AnomalyEvent) -> bool:
        logger.warning(
            "anomaly_notification",
            account_id=event.account_id,
            provider=event.provider_id,
            service=event.service_name,
            severity=event.severity.value,
            variance_percent=event.variance_percent,
            detected_date=event.detected_date.isoformat(),
        )
        return True


class SlackNotificationSink(NotificationSink):
    """Posts anomaly alerts to a Slack channel."""

    SEVERITY_COLORS = {
        Severity.LOW: "#10b981",
        Severity.MEDIUM: "#f59e0b",
        Severity.HIGH: "#f97316",
        Severity.CRITICAL: "#f43f5e",
    }

    def __init__(self, bot_token: str, channel_id: str, client: Optional[AsyncWebClient] = None):
        self.client = client or AsyncWebClient(token=bot_token)
        self.channel_id = channel_id

    async def notify(self, event: AnomalyEvent) -> bool:
        service = "All services" if event.service_name == ACCOUNT_TOTAL else event.service_name
        title = f"{event.severity.value.title()} cost {event.anomaly_type.value}: {service}"
        try:
            await self.client.chat_postMessage(
                channel=self.channel_id,
                text=title,
                attachments=[
                    {
                        "color": self.SEVERITY_COLORS[event.severity],
                        "blocks": [
                            {"type": "header", "text": {"type": "plain_text", "text": title}},
                            {"type": "section", "text": {"type": "mrkdwn", "text": event.root_cause}},
                            {
                                "type": "context",
                                "elements": [{
                                    "type": "mrkdwn",
                                    "text": f"{event.provider_id} · account {event.account_id} · {event.detected_date}",
                                }],
                            },
                        ],
                    }
                ],
            )
            logger.info("slack_alert_sent", event_id=event.id, severity=event.severity.value)
            return True
        except SlackApiError as e:
            logger.error("slack_alert_failed", event_id=event.id, error=e.response.get("error"))
            return False


def build_notification_sink(settings: Optional[Settings] = None) -> NotificationSink:
    settings = settings or get_settings()
    if settings.SLACK_BOT_TOKEN and settings.SLACK_CHANNEL_ID:
        return SlackNotificationSink(settings.SLACK_BOT_TOKEN, settings.SLACK_CHANNEL_ID)
    return LoggingNotificationSink()
