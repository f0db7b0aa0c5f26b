from reliable_chat.chat.fanout import Broadcaster
from reliable_chat.chat.hub import ChatHub
from reliable_chat.chat.models import DeliveryOutcome, ResyncState, SessionState
from reliable_chat.chat.resync import ResyncEngine
from reliable_chat.chat.session import ChatSession

__all__ = [
    "Broadcaster",
    "ChatHub",
    "ChatSession",
    "DeliveryOutcome",
    "ResyncEngine",
    "ResyncState",
    "SessionState",
]
