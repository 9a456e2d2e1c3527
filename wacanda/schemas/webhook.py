from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ProviderEvent(BaseModel):
    """One webhook delivery from the provider gateway."""

    model_config = ConfigDict(extra="allow")

    event: str = Field(validation_alias=AliasChoices("event", "type", "eventType"))
    instance: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instance", "instanceName", "instance_key"),
    )
    data: Any = None
    date_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("date_time", "dateTime"))
    server_url: Optional[str] = None
    apikey: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    event: Optional[str] = None
    action: Optional[str] = None
    detail: dict = Field(default_factory=dict)
