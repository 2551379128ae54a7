"""Web Push channel provider — implements ChannelProvider.

Delivers to every active browser subscription of the user with VAPID
authentication (pywebpush). Browsers render at most two action buttons and
a pushed notification cannot be recalled, so removal is unsupported.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pywebpush import WebPushException, webpush

from healthbot.data.db import PushSubscriptionDB
from healthbot.data.models import PushSubscription
from healthbot.ports.notification_port import DeliveryError, Notification

logger = logging.getLogger(__name__)

# Push-service responses meaning the subscription no longer exists
GONE_STATUS_CODES = (404, 410)
DEFAULT_TTL = 86400


def build_payload(notification: Notification) -> dict:
    return {
        "title": notification.title,
        "body": notification.body,
        "tag": notification.type.value,
        "data": {"type": notification.type.value, **notification.data},
        "actions": [{"action": a.id, "title": a.label} for a in notification.actions],
    }


class WebPushProvider:
    """Web Push implementation of ChannelProvider."""

    name = "webpush"

    def __init__(
        self,
        subscription_db: PushSubscriptionDB,
        vapid_private_key: str,
        vapid_subject: str,
        ttl: int = DEFAULT_TTL,
    ) -> None:
        self._subscriptions = subscription_db
        self._private_key = vapid_private_key
        self._subject = vapid_subject
        self._ttl = ttl

    def is_enabled(self) -> bool:
        return bool(self._private_key)

    def supports_actions(self) -> bool:
        return True

    def max_actions(self) -> int:
        return 2

    def supports_removal(self) -> bool:
        return False

    def _push(self, subscription: PushSubscription, payload: str) -> None:
        webpush(
            subscription_info={
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
            },
            data=payload,
            vapid_private_key=self._private_key,
            vapid_claims={"sub": self._subject},
            ttl=self._ttl,
        )

    async def send(self, user_id: int, notification: Notification) -> None:
        """Push to all of the user's subscriptions; fail only if none accepted."""
        subscriptions = self._subscriptions.list_active(user_id)
        if not subscriptions:
            raise DeliveryError(f"no push subscriptions for user {user_id}")

        payload = json.dumps(build_payload(notification))
        delivered = 0
        for subscription in subscriptions:
            try:
                # pywebpush is blocking (requests); keep it off the event loop
                await asyncio.to_thread(self._push, subscription, payload)
            except WebPushException as e:
                status = e.response.status_code if e.response is not None else None
                if status in GONE_STATUS_CODES:
                    self._subscriptions.disable(subscription.endpoint)
                logger.warning(
                    "Web push to %s failed (status %s): %s", subscription.endpoint, status, e
                )
                continue
            delivered += 1

        if delivered == 0:
            raise DeliveryError(f"web push failed for all subscriptions of user {user_id}")
        return None

    async def remove(self, handle: str) -> None:
        """Pushed notifications cannot be recalled."""
        return None
