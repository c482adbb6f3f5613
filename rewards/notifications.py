"""Post-commit notification delivery.

Delivery runs after the commit and never feeds back into it: a failure is
logged for that recipient and the remaining recipients are still tried.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

import httpx

from .errors import NotificationError
from .logging_config import get_logger
from .models import JoinEvent, JoinOutcome, NotificationPayload

logger = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def send(self, payload: NotificationPayload) -> None:
        ...

    @abstractmethod
    async def alert_admin(self, admin_id: str, message: str) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes notifications to the log. Used when no channel is configured."""

    async def send(self, payload: NotificationPayload) -> None:
        logger.info(
            "voucher_notification",
            recipient_id=payload.recipient_id,
            role=payload.role.value,
            group_id=payload.group_id,
            codes=payload.granted_voucher_codes,
        )

    async def alert_admin(self, admin_id: str, message: str) -> None:
        logger.warning("admin_alert", admin_id=admin_id, message=message)


class WebhookNotifier(Notifier):
    """Posts notifications as JSON to a messaging gateway."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self.client = client

    async def _post(self, body: dict) -> None:
        try:
            if self.client is not None:
                response = await self.client.post(self.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery to {self.url} failed: {e}") from e

    async def send(self, payload: NotificationPayload) -> None:
        await self._post({"type": "voucher_granted", **payload.model_dump(mode="json")})

    async def alert_admin(self, admin_id: str, message: str) -> None:
        await self._post({"type": "admin_alert", "recipient_id": admin_id, "message": message})


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, admin_ids: Iterable[str] = ()):
        self.notifier = notifier
        self.admin_ids = tuple(admin_ids)

    async def dispatch(self, outcome: JoinOutcome) -> list[str]:
        """Notify every party of a rewarded join. Returns the recipients that failed."""
        failed = []
        for payload in outcome.notifications:
            try:
                await self.notifier.send(payload)
            except Exception as e:
                logger.warning(
                    "notification_failed",
                    recipient_id=payload.recipient_id,
                    role=payload.role.value,
                    group_id=payload.group_id,
                    error=str(e),
                )
                failed.append(payload.recipient_id)
        return failed

    async def alert_shortage(self, event: JoinEvent, shortfall: int) -> list[str]:
        message = (
            f"New member {event.new_member_id} joined group {event.group_id} "
            f"(referred by {event.referrer_id}) but the voucher pool is short by "
            f"{shortfall}. Please add more vouchers."
        )
        failed = []
        for admin_id in self.admin_ids:
            try:
                await self.notifier.alert_admin(admin_id, message)
            except Exception as e:
                logger.warning("admin_alert_failed", admin_id=admin_id, error=str(e))
                failed.append(admin_id)
        return failed
