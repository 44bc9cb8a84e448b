from datetime import datetime, timezone
import logging

from models import ChatMessage
from .exceptions import InvalidInput

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 200

def _clean(value):
    text = value.strip() if isinstance(value, str) else ""
    return text or None

def _sender_name(profile: dict):
    full_name = f"{profile.get('names') or ''} {profile.get('surnames') or ''}".strip()
    return _clean(profile.get("driverName")) or _clean(full_name) or _clean(profile.get("email"))

async def send_message(ride_id: str, uid: str, text: str, store) -> ChatMessage | None:
    """Post a chat message on a ride; blank text is ignored and returns None"""
    if not uid:
        raise InvalidInput("Sender is required")
    if not ride_id:
        raise InvalidInput("rideId is required")

    text = _clean(text)
    if not text:
        return None

    profile = store.get_user(uid) or {}
    message = {
        "text": text,
        "senderUid": uid,
        "senderName": _sender_name(profile),
        "senderRole": _clean(profile.get("role")),
        "createdAt": datetime.now(timezone.utc),
    }
    message_id = store.add_message(ride_id, message)
    logger.info(f"Message {message_id} sent on ride {ride_id} by {uid}")
    return ChatMessage(id=message_id, **message)

async def list_messages(ride_id: str, store) -> list[ChatMessage]:
    return [ChatMessage.model_validate(m) for m in store.list_messages(ride_id, MESSAGE_LIMIT)]

def subscribe_messages(ride_id: str, handler, store):
    """Deliver the latest messages of a ride, oldest first, on every change"""
    def _deliver(docs):
        handler([ChatMessage.model_validate(m) for m in docs])
    return store.subscribe_messages(ride_id, _deliver, MESSAGE_LIMIT)
