# pikup/services/messaging.py
# Order chat between customer and driver, stored as conversations/<id>/messages/<id>.
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional

from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.db.documents import CONVERSATIONS, MESSAGES, RemoteDocumentClient
from pikup.models.messaging import Conversation, Message, SenderType, conversation_id_for
from pikup.services.polling import Callback, PollingSubscription, subscribe

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow():
    return datetime.now(timezone.utc)


def _unread_field(role: str) -> str:
    return "unreadByCustomer" if role == "customer" else "unreadByDriver"


def _other_party(role: str) -> str:
    return "driver" if role == "customer" else "customer"


class MessagingService:
    def __init__(
        self,
        client: RemoteDocumentClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.settings = settings or client.settings or get_settings()
        self.clock = clock

    def _messages_path(self, conversation_id: str) -> str:
        return f"{CONVERSATIONS}/{conversation_id}/{MESSAGES}"

    async def ensure_conversation(
        self,
        order_id: str,
        customer_id: str,
        driver_id: str,
        customer_name: Optional[str] = None,
        driver_name: Optional[str] = None,
    ) -> str:
        """
        Creates the conversation for an (order, customer, driver) triple, or
        only touches it when it already exists. Counters, preview and
        ``createdAt`` are never reset on an existing conversation.
        """
        conversation_id = conversation_id_for(order_id, customer_id, driver_id)
        existing = await self.client.find_document(CONVERSATIONS, conversation_id)
        now = self.clock()
        fields = {
            "requestId": order_id,
            "customerId": customer_id,
            "driverId": driver_id,
            "updatedAt": now,
        }
        if customer_name:
            fields["customerName"] = customer_name
        if driver_name:
            fields["driverName"] = driver_name
        if existing is None:
            fields.update({
                "createdAt": now,
                "lastMessage": None,
                "lastMessageAt": None,
                "unreadByCustomer": 0,
                "unreadByDriver": 0,
            })
        await self.client.update_fields(CONVERSATIONS, conversation_id, fields, must_exist=False)
        logger.bind(conversation_id=conversation_id).info(
            "Conversation touched." if existing else "Conversation created."
        )
        return conversation_id

    async def get_conversation(self, conversation_id: str) -> Conversation:
        doc = await self.client.get_document(CONVERSATIONS, conversation_id)
        return Conversation.model_validate({**doc.fields, "id": doc.id})

    async def list_conversations(self, user_id: str, role: str) -> List[Conversation]:
        """Conversations the user takes part in, most recent activity first."""
        field = "customerId" if role == "customer" else "driverId"
        docs = await self.client.list_documents(CONVERSATIONS)
        conversations = [
            Conversation.model_validate({**doc.fields, "id": doc.id})
            for doc in docs
            if doc.get(field) == user_id
        ]
        conversations.sort(key=lambda c: c.last_message_at or c.updated_at or _EPOCH, reverse=True)
        return conversations

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: SenderType,
        content: str,
        message_type: str = "text",
    ) -> Message:
        now = self.clock()
        message = Message(
            id=f"{int(now.timestamp() * 1000)}_{secrets.token_hex(5)[:9]}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_type=sender_type,
            content=content,
            message_type=message_type,
            timestamp=now,
            read=False,
        )
        await self.client.set_document(self._messages_path(conversation_id), message.id, message.model_dump(by_alias=True))

        conversation = await self.client.get_document(CONVERSATIONS, conversation_id)
        unread = _unread_field(_other_party(sender_type))
        await self.client.update_fields(CONVERSATIONS, conversation_id, {
            "lastMessage": content,
            "lastMessageAt": now,
            unread: (conversation.get(unread) or 0) + 1,
            "updatedAt": now,
        })
        logger.bind(conversation_id=conversation_id, sender_id=sender_id).debug("Message sent.")
        return message

    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages in chronological order."""
        docs = await self.client.list_documents(self._messages_path(conversation_id), order_by="timestamp")
        messages = [Message.model_validate({**doc.fields, "id": doc.id}) for doc in docs]
        messages.sort(key=lambda m: m.timestamp)
        return messages

    async def mark_read(self, conversation_id: str, role: str) -> None:
        """Clears the unread counter of the reading party."""
        await self.client.update_fields(CONVERSATIONS, conversation_id, {_unread_field(role): 0})

    def subscribe_to_messages(
        self,
        conversation_id: str,
        on_messages: Callback,
        on_error: Optional[Callback] = None,
    ) -> PollingSubscription:
        async def fetch():
            return await self.get_messages(conversation_id)

        return subscribe(
            fetch,
            on_messages,
            interval=self.settings.message_poll_interval,
            on_error=on_error,
            settings=self.settings,
            name=f"messages:{conversation_id}",
        )
