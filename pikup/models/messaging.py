from datetime import datetime
from typing import Literal, Optional

from pikup.models.order import StoredModel

SenderType = Literal["customer", "driver"]


def conversation_id_for(order_id: str, customer_id: str, driver_id: str) -> str:
    return f"{order_id}_{customer_id}_{driver_id}"


class Conversation(StoredModel):
    id: str
    request_id: str
    customer_id: str
    driver_id: str
    customer_name: Optional[str] = None
    driver_name: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_by_customer: int = 0
    unread_by_driver: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Message(StoredModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_type: SenderType
    content: str
    message_type: str = "text"
    timestamp: datetime
    read: bool = False
