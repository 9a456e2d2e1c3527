from wacanda.models.ai_configuration import AIConfiguration
from wacanda.models.conversation import Conversation
from wacanda.models.handoff_request import HandoffRequest
from wacanda.models.instance import ProviderInstance
from wacanda.models.message import Message

__all__ = [
    "ProviderInstance",
    "Conversation",
    "Message",
    "HandoffRequest",
    "AIConfiguration",
]
