# leadflow/infra/notification_channels.py
"""
Push delivery channels (the engine's ``Notifier``).

- ``log``     write notifications to the application log (dev default)
- ``webhook`` POST to an external push gateway that owns device tokens
              and the actual transport

Usage:
    notifier = get_notification_channel()
    await notifier.notify(["closer-1"], notification)
"""
from __future__ import annotations

import abc

import aiohttp

from leadflow.config import settings
from leadflow.core.dispatch.notifications import PushNotification
from leadflow.infra.http_client import get_push_session
from leadflow.infra.logging_config import get_logger
from leadflow.infra.metrics import inc_counter

logger = get_logger(__name__)


class PushDeliveryError(RuntimeError):
    """The push gateway rejected or did not answer a delivery."""


class NotificationChannel(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        pass

    @abc.abstractmethod
    def is_configured(self) -> bool:
        pass

    @abc.abstractmethod
    async def notify(self, user_ids: list[str], notification: PushNotification) -> None:
        """Deliver to every user's devices. Raises PushDeliveryError on failure."""
        pass


class LogOnlyChannel(NotificationChannel):
    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def notify(self, user_ids: list[str], notification: PushNotification) -> None:
        logger.info(
            f"[push:{notification.kind}] to={user_ids} title={notification.title!r} body={notification.body!r}",
            extra={"lead_id": notification.data.get("lead_id")},
        )
        inc_counter("push_channel_sent", channel=self.name)


class WebhookPushChannel(NotificationChannel):
    """
    POST ``{"user_ids": [...], "notification": {...}}`` to the gateway.

    Any non-2xx answer is a delivery failure. Retrying is left to the
    caller; the engine treats pushes as best-effort.
    """

    def __init__(self, url: str | None = None, token: str | None = None, timeout: float | None = None):
        self._url = url or settings.push_gateway_url
        self._token = token or settings.push_gateway_token
        self._timeout = timeout or settings.push_timeout_seconds

    @property
    def name(self) -> str:
        return "webhook"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def notify(self, user_ids: list[str], notification: PushNotification) -> None:
        if not self.is_configured():
            raise PushDeliveryError("push gateway URL is not configured")

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        body = {"user_ids": user_ids, "notification": notification.to_dict()}

        try:
            session = get_push_session(self._timeout)
            async with session.post(self._url, json=body, headers=headers) as resp:
                if resp.status >= 300:
                    text = (await resp.text())[:200]
                    inc_counter("push_channel_failed", channel=self.name)
                    raise PushDeliveryError(f"gateway answered {resp.status}: {text}")
        except aiohttp.ClientError as exc:
            inc_counter("push_channel_failed", channel=self.name)
            raise PushDeliveryError(f"gateway unreachable: {type(exc).__name__}") from exc

        inc_counter("push_channel_sent", channel=self.name)
        logger.debug(
            f"Push '{notification.kind}' delivered to {len(user_ids)} user(s)",
            extra={"lead_id": notification.data.get("lead_id")},
        )


_CHANNELS: dict[str, type[NotificationChannel]] = {
    "log": LogOnlyChannel,
    "webhook": WebhookPushChannel,
}


def get_notification_channel(channel_name: str | None = None) -> NotificationChannel:
    """Channel selected by ``PUSH_CHANNEL`` (falls back to log)."""
    channel_name = channel_name or settings.push_channel
    channel_class = _CHANNELS.get(channel_name)
    if channel_class is None:
        logger.error(f"Unknown push channel: {channel_name}, using log")
        channel_class = LogOnlyChannel

    channel = channel_class()
    if not channel.is_configured():
        logger.warning(f"Push channel '{channel.name}' not configured, notifications will fail")
    return channel
