"""Webhook-related Pydantic schemas."""

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Acknowledgement returned for every webhook delivery."""

    status: str = Field("received", description="Always 'received'")
    topic: str = Field(..., description="Topic header of the delivery")
