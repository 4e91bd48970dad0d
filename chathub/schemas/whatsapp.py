from typing import Optional

from pydantic import BaseModel, Field


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppInboundMessage(BaseModel):
    id: str
    from_: str = Field(alias="from")
    type: str
    timestamp: str
    text: Optional[WhatsAppText] = None


class WhatsAppProfile(BaseModel):
    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    wa_id: str
    profile: Optional[WhatsAppProfile] = None


class WhatsAppMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class WhatsAppChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[WhatsAppMetadata] = None
    contacts: list[WhatsAppContact] = []
    messages: list[WhatsAppInboundMessage] = []


class WhatsAppChange(BaseModel):
    field: str
    value: WhatsAppChangeValue


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = []


class WhatsAppWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = []
