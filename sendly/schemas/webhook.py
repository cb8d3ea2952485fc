from pydantic import BaseModel


class WebhookAckOut(BaseModel):
    received: bool = True
    status: str
    event_type: str | None = None
