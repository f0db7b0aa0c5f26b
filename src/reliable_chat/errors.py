from __future__ import annotations


class ChatError(Exception):
    """Base class for failures raised by the chat core."""


class DuplicateOffset(ChatError):
    """The client offset is already stored; the submission is settled."""

    def __init__(self, client_offset: str):
        super().__init__(f"Client offset already stored: {client_offset}")
        self.client_offset = client_offset


class StorageUnavailable(ChatError):
    """The message log could not persist or read a record."""


class ResyncReadFailure(ChatError):
    """Catch-up replay could not read the message log."""

    def __init__(self, after_sequence: int, cause: BaseException):
        super().__init__(f"Resync read failed after sequence {after_sequence}: {cause}")
        self.after_sequence = after_sequence
        self.cause = cause
