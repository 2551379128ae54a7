"""Notification port — the channel provider contract and the notification shape.

Core modules depend on this protocol, never on a specific messaging provider.
Providers describe their capabilities (actions, removal) explicitly so the
dispatcher can adapt a notification before handing it over.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class DeliveryError(Exception):
    """A notification could not be delivered.

    Raised by a provider for its own failure, and by the dispatcher when no
    provider accepted the message.
    """


class NotificationType(str, Enum):
    MEDICATION = "medication"
    WORKOUT = "workout"
    BLOOD_PRESSURE = "blood_pressure"
    WEIGHT = "weight"
    LOW_STOCK = "low_stock"


@dataclass(frozen=True)
class NotificationAction:
    """An interactive button. id is what comes back when the user taps it."""

    id: str
    label: str


@dataclass(frozen=True)
class Notification:
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    actions: tuple[NotificationAction, ...] = ()

    def with_actions(self, actions: tuple[NotificationAction, ...]) -> Notification:
        return replace(self, actions=actions)


@runtime_checkable
class ChannelProvider(Protocol):
    """A notification delivery channel."""

    name: str

    def is_enabled(self) -> bool: ...

    def supports_actions(self) -> bool: ...

    def max_actions(self) -> int: ...

    def supports_removal(self) -> bool: ...

    async def send(self, user_id: int, notification: Notification) -> str | None:
        """Deliver and return a handle for later removal (None if not removable).

        Raises DeliveryError (or any transport error) on failure.
        """
        ...

    async def remove(self, handle: str) -> None: ...
