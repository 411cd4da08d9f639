from teamchat.models.team import Base, Team
from teamchat.models.contact import Contact, Group
from teamchat.models.conversation import Conversation
from teamchat.models.message import Direction, Message, MessageStatus, MessageType

__all__ = [
    "Base",
    "Team",
    "Contact",
    "Group",
    "Conversation",
    "Message",
    "Direction",
    "MessageStatus",
    "MessageType",
]
