from reliable_chat.storage.dedup import DedupGate
from reliable_chat.storage.message_log import MessageLog
from reliable_chat.storage.models import AdmitResult, MessageRecord

__all__ = [
    "AdmitResult",
    "DedupGate",
    "MessageLog",
    "MessageRecord",
]
