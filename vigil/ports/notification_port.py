"""Notification port — abstract interface for sending messages to owners.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class DeliveryFailure(Exception):
    """A reminder was dropped after exhausting its delivery attempts."""

    def __init__(self, recipient: str, attempts: int, priority: int) -> None:
        super().__init__(
            f"Reminder to {recipient} dropped after {attempts} failed attempts"
        )
        self.recipient = recipient
        self.attempts = attempts
        self.priority = priority


class NotificationPort(Protocol):
    """Abstract notification interface used by the reminder queue.

    Returns True on success, False on a delivery failure the transport
    could identify. Unexpected exceptions are treated as failures by callers.
    """

    async def send_message(self, recipient: str, text: str) -> bool: ...
