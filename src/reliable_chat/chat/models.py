from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ResyncState(str, Enum):
    NEEDS_RESYNC = "needs_resync"
    LIVE = "live"


@dataclass(frozen=True)
class OutboundItem:
    kind: str
    text: str
    sequence_number: int | None = None

    @classmethod
    def message(cls, content: str, sequence_number: int) -> OutboundItem:
        return cls(kind="message", text=content, sequence_number=sequence_number)

    @classmethod
    def notice(cls, text: str) -> OutboundItem:
        return cls(kind="notice", text=text)


@dataclass(frozen=True)
class DeliveryOutcome:
    acknowledged: bool
    sequence_number: int | None = None
    duplicate: bool = False
    reason: str | None = None

    @classmethod
    def accepted(cls, sequence_number: int) -> DeliveryOutcome:
        return cls(acknowledged=True, sequence_number=sequence_number)

    @classmethod
    def settled_duplicate(cls) -> DeliveryOutcome:
        return cls(acknowledged=True, duplicate=True)

    @classmethod
    def rejected(cls, reason: str) -> DeliveryOutcome:
        return cls(acknowledged=False, reason=reason)
