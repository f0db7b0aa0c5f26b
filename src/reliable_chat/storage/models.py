from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MessageRecord:
    sequence_number: int
    client_offset: str | None
    content: str
    created_at: str


@dataclass(frozen=True)
class AdmitResult:
    accepted: bool
    sequence_number: int | None = None
