"""Errors raised by the conflict, hold and scheduling services."""

from __future__ import annotations


class EventCoreError(Exception):
    """Base class for every error raised inside the core."""


class RepositoryError(EventCoreError):
    """A repository or store call failed or timed out."""


class CandidateValidationError(EventCoreError, ValueError):
    """A candidate event or hold request is malformed."""


class SlotAlreadyHeld(EventCoreError):
    def __init__(self, slot_key: str, hold_id: str) -> None:
        super().__init__(f"Slot {slot_key} is already held by hold {hold_id}")
        self.slot_key = slot_key
        self.hold_id = hold_id


class HoldNotFound(EventCoreError):
    def __init__(self, hold_id: str) -> None:
        super().__init__(f"Pencil hold {hold_id} not found")
        self.hold_id = hold_id


class HoldExpired(EventCoreError):
    def __init__(self, hold_id: str) -> None:
        super().__init__(f"Pencil hold {hold_id} has expired")
        self.hold_id = hold_id


class NotificationError(EventCoreError):
    """A single send to a single recipient failed."""

    def __init__(self, kind: str, recipient: str, reason: str) -> None:
        super().__init__(f"{kind} notification to {recipient} failed: {reason}")
        self.kind = kind
        self.recipient = recipient
