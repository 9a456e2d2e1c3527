from wacanda.schemas.conversation import RespondRequest, RespondResponse
from wacanda.schemas.handoff import AssignHandoffRequest, HandoffRequestResponse, ResolveHandoffRequest
from wacanda.schemas.sync import SyncProgressResponse
from wacanda.schemas.webhook import ProviderEvent, WebhookResponse

__all__ = [
    "ProviderEvent",
    "WebhookResponse",
    "SyncProgressResponse",
    "RespondRequest",
    "RespondResponse",
    "HandoffRequestResponse",
    "AssignHandoffRequest",
    "ResolveHandoffRequest",
]
