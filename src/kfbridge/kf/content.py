"""Text extraction from sync messages.

Every msgtype maps to a short text form the dispatch collaborator can read.
Media items are optionally downloaded first and referenced by saved path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from kfbridge.infra.accounts import ResolvedAccount
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import safe_log_context

from .errors import UpstreamError
from .media import InboundMediaError, MediaDescriptor, save_inbound_media
from .models import (
    BusinessCardMessage,
    EventMessage,
    FileMessage,
    ImageMessage,
    LinkMessage,
    LocationMessage,
    MediaMessage,
    MenuMessage,
    MiniProgramMessage,
    SyncMessage,
    TextMessage,
    UnknownMessage,
    VideoMessage,
    VoiceMessage,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExtractedContent:
    text: str
    media: MediaDescriptor | None = None


def _location_text(message: LocationMessage) -> str:
    loc = message.location
    parts: list[str] = []
    if loc.latitude is not None and loc.longitude is not None:
        parts.append(f"{loc.latitude},{loc.longitude}")
    if loc.name:
        parts.append(loc.name)
    if loc.address:
        parts.append(loc.address)
    return f"[location] {' '.join(parts)}" if parts else "[location]"


def _link_text(message: LinkMessage) -> str:
    title = message.link.title or ""
    url = message.link.url or ""
    return f"[link] {title} {url}".strip() if url else f"[link] {title}".strip()


def _menu_text(message: MenuMessage) -> str:
    head = message.msgmenu.head_content or ""
    items = [item.content for item in message.msgmenu.items if item.content]
    if head:
        return "\n".join([head, *items]).strip()
    return "\n".join(items) or "[msgmenu]"


def extract_message_content(message: SyncMessage) -> str:
    """Plain text form of a sync message."""
    match message:
        case TextMessage():
            return message.text.content
        case ImageMessage() | VoiceMessage() | VideoMessage() | FileMessage():
            return f"[{message.msgtype}]"
        case LocationMessage():
            return _location_text(message)
        case LinkMessage():
            return _link_text(message)
        case BusinessCardMessage():
            return f"[business_card] userid:{message.business_card.userid}"
        case MiniProgramMessage():
            return f"[miniprogram] {message.miniprogram.title or ''}".strip()
        case MenuMessage():
            return _menu_text(message)
        case EventMessage():
            event_type = message.event.event_type
            return f"[event] {event_type}" if event_type else "[event]"
        case UnknownMessage():
            return f"[{message.msgtype}]" if message.msgtype else ""
        case _:
            assert_never(message)


def _media_body(message: MediaMessage):
    match message:
        case ImageMessage():
            return message.image
        case VoiceMessage():
            return message.voice
        case VideoMessage():
            return message.video
        case FileMessage():
            return message.file
        case _:
            assert_never(message)


def _enrich_media(client, account: ResolvedAccount, message: MediaMessage) -> ExtractedContent:
    kind = message.msgtype
    media_id = _media_body(message).media_id
    if not media_id:
        return ExtractedContent(text=f"[{kind}]")

    try:
        media = save_inbound_media(client, account, kind=kind, media_id=media_id)
    except InboundMediaError as e:
        return ExtractedContent(
            text=f"[{kind}] (save failed) {e}".strip(),
            media=MediaDescriptor(kind=kind, media_id=media_id),
        )
    except UpstreamError as e:
        logger.warning(
            "inbound media download failed",
            extra={
                "extra_fields": safe_log_context(
                    account_id=account.account_id,
                    msgid=message.msgid,
                    errcode=e.errcode,
                )
            },
        )
        return ExtractedContent(
            text=f"[{kind}] (download error: {e})",
            media=MediaDescriptor(kind=kind, media_id=media_id),
        )
    return ExtractedContent(text=f"[{kind}] saved:{media.path}", media=media)


def extract_inbound_content(
    message: SyncMessage,
    *,
    account: ResolvedAccount,
    client=None,
) -> ExtractedContent:
    """Text plus optional saved media for a customer message.

    Media is downloaded only when a client is given and the account's
    inbound_media.enabled is set.
    """
    media_enabled = client is not None and account.config.inbound_media.enabled
    match message:
        case ImageMessage() | VoiceMessage() | VideoMessage() | FileMessage() if media_enabled:
            return _enrich_media(client, account, message)
        case _:
            return ExtractedContent(text=extract_message_content(message))
