"""
Health Reminder Bot — Notification fan-out.

Sends one logical notification to every provider the user has enabled for
its type. Providers run concurrently, each under its own timeout; one
provider failing never blocks the others. The send succeeds when at least
one provider accepted the message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from healthbot.data.db import NotificationSettingsDB
from healthbot.ports.notification_port import (
    ChannelProvider,
    DeliveryError,
    Notification,
    NotificationAction,
)

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    """Outcome of a successful fan-out."""

    delivered: list[str] = field(default_factory=list)   # provider names
    handles: dict[str, str] = field(default_factory=dict)  # provider -> handle
    failed: dict[str, str] = field(default_factory=dict)   # provider -> error text


def adapt_actions(
    provider: ChannelProvider, actions: tuple[NotificationAction, ...]
) -> tuple[NotificationAction, ...]:
    """Strip or truncate actions to what the provider can render. Never reorders."""
    if not provider.supports_actions():
        return ()
    limit = provider.max_actions()
    if len(actions) > limit:
        return actions[:limit]
    return actions


class NotificationDispatcher:
    """Registry of channel providers plus the fan-out logic."""

    def __init__(
        self,
        settings_db: NotificationSettingsDB,
        providers: Iterable[ChannelProvider] = (),
        timeout: float | None = None,
    ) -> None:
        self._settings_db = settings_db
        self._providers: dict[str, ChannelProvider] = {}
        self._timeout = timeout
        for provider in providers:
            self.register(provider)

    def register(self, provider: ChannelProvider) -> None:
        self._providers[provider.name] = provider
        logger.info("Registered notification provider '%s'", provider.name)

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def enabled_providers(self, user_id: int, notification: Notification) -> list[ChannelProvider]:
        names = self._settings_db.get_enabled_providers(
            user_id, notification.type.value, self.provider_names
        )
        return [
            self._providers[name] for name in names if self._providers[name].is_enabled()
        ]

    async def _send_one(
        self, provider: ChannelProvider, user_id: int, notification: Notification
    ) -> str | None:
        adapted = notification.with_actions(adapt_actions(provider, notification.actions))
        return await asyncio.wait_for(provider.send(user_id, adapted), timeout=self._timeout)

    async def send(self, user_id: int, notification: Notification) -> DeliveryReceipt:
        """Fan out to every enabled provider.

        Raises DeliveryError when no provider is enabled or all of them fail.
        """
        providers = self.enabled_providers(user_id, notification)
        if not providers:
            raise DeliveryError(
                f"no enabled providers for user {user_id} ({notification.type.value})"
            )

        results = await asyncio.gather(
            *(self._send_one(p, user_id, notification) for p in providers),
            return_exceptions=True,
        )

        receipt = DeliveryReceipt()
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.TimeoutError):
                    reason = "timed out"
                else:
                    reason = str(result) or type(result).__name__
                receipt.failed[provider.name] = reason
                logger.error(
                    "Provider '%s' failed to send %s to user %d: %s",
                    provider.name, notification.type.value, user_id, reason,
                )
                continue
            receipt.delivered.append(provider.name)
            if result is not None:
                receipt.handles[provider.name] = result

        if not receipt.delivered:
            raise DeliveryError(
                f"all providers failed for user {user_id}: "
                + ", ".join(f"{name}: {err}" for name, err in receipt.failed.items())
            )

        logger.info(
            "Sent %s notification to user %d via %s",
            notification.type.value, user_id, ", ".join(receipt.delivered),
        )
        return receipt

    async def retract(self, handles: dict[str, str] | Iterable[tuple[str, str]]) -> None:
        """Best-effort removal of previously sent notifications.

        Unknown providers and providers without removal support are skipped;
        removal failures are logged, never raised.
        """
        pairs = handles.items() if isinstance(handles, dict) else handles
        for name, handle in pairs:
            provider = self._providers.get(name)
            if provider is None or not provider.supports_removal():
                continue
            try:
                await asyncio.wait_for(provider.remove(handle), timeout=self._timeout)
            except Exception as e:
                logger.warning("Failed to remove %s notification %s: %s", name, handle, e)
