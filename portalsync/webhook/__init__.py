"""Z-API WhatsApp webhook classification and persistence."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from portalsync.db.models import Message, MessageDirection, WebhookEvent
from portalsync.db.repository import Repository

log = logging.getLogger("portalsync.webhook")

PRESENCE_STATUSES = {"composing", "recording", "available", "unavailable"}

# Delivery statuses only move forward; unknown statuses rank lowest.
STATUS_RANKS = {
    "PENDING": 0,
    "SENT": 1,
    "RECEIVED": 2,
    "DELIVERED": 2,
    "READ": 3,
    "READ_BY_ME": 3,
    "PLAYED": 4,
}

MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


class EventKind(Enum):
    """Kind of event delivered by the messaging gateway."""

    CONNECTION = "connection"
    DISCONNECTION = "disconnection"
    BATTERY_LEVEL = "battery_level"
    CHAT_PRESENCE = "chat_presence"
    MESSAGE_STATUS = "message_status"
    SENT_MESSAGE = "sent_message"
    RECEIVED_MESSAGE = "received_message"
    REACTION = "reaction"
    UNKNOWN = "unknown"

    @property
    def is_message(self) -> bool:
        return self in (EventKind.SENT_MESSAGE, EventKind.RECEIVED_MESSAGE)


@dataclass
class WebhookResult:
    """Outcome of processing one webhook payload."""

    event_kind: EventKind
    event_id: int | None = None
    conversation_id: int | None = None
    message_id: int | None = None
    duplicate: bool = False
    statuses_updated: int = 0


def classify_event(payload: dict) -> EventKind:
    """Classify a payload by which optional fields it carries."""
    if "connected" in payload and "smartphoneConnected" in payload:
        return EventKind.CONNECTION if payload["connected"] else EventKind.DISCONNECTION
    if payload.get("batteryLevel") is not None:
        return EventKind.BATTERY_LEVEL
    status = payload.get("status")
    if payload.get("chatPresence") or (
        isinstance(status, str) and status.lower() in PRESENCE_STATUSES
    ):
        return EventKind.CHAT_PRESENCE
    if payload.get("type") == "MessageStatusCallback":
        return EventKind.MESSAGE_STATUS
    if (
        status
        and (payload.get("id") or payload.get("ids"))
        and not payload.get("body")
        and not payload.get("text")
        and not payload.get("type")
    ):
        return EventKind.MESSAGE_STATUS
    if (
        "isStatusReply" in payload
        or payload.get("senderLid")
        or payload.get("chatLid")
        or payload.get("body")
        or payload.get("text")
        or payload.get("type")
    ):
        if payload.get("fromMe") is True:
            return EventKind.SENT_MESSAGE
        return EventKind.RECEIVED_MESSAGE
    if payload.get("reactionMessage") or payload.get("reaction"):
        return EventKind.REACTION
    return EventKind.UNKNOWN


def extract_message_type(payload: dict) -> str | None:
    """Detect the content type of a message payload."""
    if not payload.get("type") and not payload.get("body") and not payload.get("text"):
        return None
    for media in MEDIA_TYPES:
        if payload.get(media):
            return media
    if payload.get("contact"):
        return "contact"
    if payload.get("location") or payload.get("loc"):
        return "location"
    if payload.get("listMessage"):
        return "list"
    if payload.get("buttonsMessage") or payload.get("templateButtons"):
        return "buttons"
    if payload.get("productMessage"):
        return "product"
    if payload.get("orderMessage"):
        return "order"
    if payload.get("poll"):
        return "poll"
    if payload.get("reactionMessage") or payload.get("reaction"):
        return "reaction"
    if payload.get("linkPreview") or payload.get("matchedText"):
        return "link_preview"
    if payload.get("body") or _nested(payload, "text", "message") or payload.get("text"):
        return "text"
    return payload.get("type") or "unknown"


def extract_phone(payload: dict) -> str | None:
    """Extract the chat phone number, without the WhatsApp JID suffix."""
    for key in ("phone", "from"):
        if payload.get(key):
            return str(payload[key])
    for key in ("chatId", "chat"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value.replace("@c.us", "").replace("@g.us", "")
    return None


def extract_message_text(payload: dict) -> str | None:
    """Extract the textual content of a message."""
    text = (
        payload.get("body")
        or _nested(payload, "text", "message")
        or payload.get("text")
        or payload.get("caption")
        or _nested(payload, "listMessage", "description")
    )
    if text is None or text == "":
        return None
    if isinstance(text, str):
        return text
    return json.dumps(text)


def extract_media(payload: dict) -> tuple[str | None, str | None]:
    """Extract the media URL and mime type of a message."""
    for media in MEDIA_TYPES:
        content = payload.get(media)
        if isinstance(content, dict):
            url = content.get(f"{media}Url") or content.get("url")
            return url, content.get("mimetype")
    return None, None


def extract_message_id(payload: dict) -> str | None:
    """Extract the gateway message id."""
    if payload.get("messageId"):
        return str(payload["messageId"])
    message_id = payload.get("id")
    if isinstance(message_id, dict):
        message_id = message_id.get("id") or message_id.get("_serialized")
    return str(message_id) if message_id else None


def normalize_event(payload: dict, kind: EventKind) -> WebhookEvent:
    """Build the raw audit row for a payload."""
    phone = extract_phone(payload)
    media_url, media_mime_type = extract_media(payload)
    is_group = bool(
        payload.get("isGroup")
        or payload.get("isGroupMsg")
        or "@g.us" in str(payload.get("chatId") or payload.get("chat") or "")
    )
    return WebhookEvent(
        id=None,
        event_type=kind.value,
        raw_payload=payload,
        phone=phone,
        message_id=extract_message_id(payload),
        zaap_id=payload.get("zapiMessageId") or payload.get("zaapId"),
        is_group=is_group,
        chat_name=payload.get("chatName") or payload.get("senderName"),
        sender_name=(
            payload.get("senderName") or payload.get("pushName") or payload.get("notifyName")
        ),
        is_from_me=payload.get("fromMe") is True,
        status=payload.get("status") if isinstance(payload.get("status"), str) else None,
        message_type=extract_message_type(payload),
        message_text=extract_message_text(payload),
        media_url=media_url,
        media_mime_type=media_mime_type,
        received_at=datetime.now(),
    )


async def process_webhook(repo: Repository, payload: dict) -> WebhookResult:
    """Persist a gateway payload and apply it to conversations and messages."""
    kind = classify_event(payload)
    event = await repo.save_webhook_event(normalize_event(payload, kind))
    result = WebhookResult(event_kind=kind, event_id=event.id)
    log.info(
        f"Event {kind.value} | type {event.message_type} | phone {event.phone} "
        f"| fromMe {event.is_from_me}"
    )

    if kind.is_message:
        await _store_message(repo, event, kind, result)
    elif kind == EventKind.MESSAGE_STATUS:
        await _update_statuses(repo, payload, result)
    return result


async def _store_message(
    repo: Repository, event: WebhookEvent, kind: EventKind, result: WebhookResult
) -> None:
    if not event.phone or not (event.message_text or event.media_url):
        log.debug(f"Message event {event.id} has no phone or content, not stored")
        return

    inbound = kind == EventKind.RECEIVED_MESSAGE
    name = event.chat_name if inbound or event.is_group else None
    conversation = await repo.get_or_create_conversation(event.phone, name, event.is_group)
    # The message insert decides duplicates; the summary only moves for new messages.
    message = await repo.save_message(
        Message(
            id=None,
            conversation_id=conversation.id,
            message_id=event.message_id,
            direction=MessageDirection.INBOUND if inbound else MessageDirection.OUTBOUND,
            message_type=event.message_type,
            text=event.message_text,
            media_url=event.media_url,
            media_mime_type=event.media_mime_type,
            status=event.status.upper() if event.status else None,
            sent_at=event.received_at,
        )
    )
    if message is None:
        log.info(f"Duplicate delivery of message {event.message_id} ignored")
        result.duplicate = True
        return

    conversation = await repo.upsert_conversation(
        phone=event.phone,
        name=name,
        last_message=event.message_text or f"[{event.message_type or 'media'}]",
        last_message_at=event.received_at,
        is_group=event.is_group,
        increment_unread=inbound,
    )
    result.conversation_id = conversation.id
    result.message_id = message.id


async def _update_statuses(repo: Repository, payload: dict, result: WebhookResult) -> None:
    status = payload.get("status")
    if not isinstance(status, str):
        return
    ids = payload.get("ids")
    if not isinstance(ids, list):
        ids = [extract_message_id(payload)]
    for message_id in ids:
        if not message_id:
            continue
        message = await repo.get_message_by_message_id(str(message_id))
        if message is None:
            continue
        if status_rank(status) <= status_rank(message.status):
            continue
        await repo.update_message_status(str(message_id), status.upper())
        result.statuses_updated += 1


def status_rank(status: str | None) -> int:
    """Ordering of delivery statuses."""
    if not status:
        return -1
    return STATUS_RANKS.get(status.upper(), 0)


def _nested(payload: dict, key: str, inner: str):
    value = payload.get(key)
    if isinstance(value, dict):
        return value.get(inner)
    return None
