"""Sync message models - tagged unions keyed by msgtype and event_type.

Items from sync_msg are parsed into one model per msgtype. Anything the
bridge does not know becomes UnknownMessage / UnknownEvent so the caller
can still dedup and log it.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError


class Origin(IntEnum):
    """Who produced a fetched item."""

    CUSTOMER = 3
    SYSTEM = 4
    SERVICER = 5


# ── Payload bodies ───────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(extra="allow")


class TextBody(_Body):
    content: str = ""
    menu_id: str | None = None


class MediaBody(_Body):
    media_id: str = ""


class LocationBody(_Body):
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None


class LinkBody(_Body):
    title: str | None = None
    desc: str | None = None
    url: str | None = None
    pic_url: str | None = None


class BusinessCardBody(_Body):
    userid: str = ""


class MiniProgramBody(_Body):
    title: str | None = None
    appid: str | None = None
    pagepath: str | None = None
    thumb_media_id: str | None = None


class MenuItem(_Body):
    type: str = ""
    click: dict[str, Any] | None = None
    view: dict[str, Any] | None = None
    miniprogram: dict[str, Any] | None = None

    @property
    def content(self) -> str:
        """Display text of the item, whatever its kind."""
        body = {"click": self.click, "view": self.view, "miniprogram": self.miniprogram}.get(
            self.type
        )
        return str((body or {}).get("content") or "")


class MenuBody(_Body):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    head_content: str | None = None
    tail_content: str | None = None
    items: list[MenuItem] = Field(default_factory=list, alias="list")


# ── Events ───────────────────────────────────────────────


class _EventBase(_Body):
    open_kfid: str | None = None
    external_userid: str | None = None


class EnterSessionEvent(_EventBase):
    event_type: Literal["enter_session"] = "enter_session"
    scene: str | None = None
    scene_param: str | None = None
    welcome_code: str | None = None


class MsgSendFailEvent(_EventBase):
    event_type: Literal["msg_send_fail"] = "msg_send_fail"
    fail_msgid: str | None = None
    fail_type: int | None = None


class ServicerStatusChangeEvent(_EventBase):
    event_type: Literal["servicer_status_change"] = "servicer_status_change"
    servicer_userid: str | None = None
    status: int | None = None


class SessionStatusChangeEvent(_EventBase):
    event_type: Literal["session_status_change"] = "session_status_change"
    change_type: int | None = None
    old_servicer_userid: str | None = None
    new_servicer_userid: str | None = None
    msg_code: str | None = None


class UnknownEvent(_EventBase):
    event_type: str = ""


KfEvent = Union[
    EnterSessionEvent,
    MsgSendFailEvent,
    ServicerStatusChangeEvent,
    SessionStatusChangeEvent,
    UnknownEvent,
]

_EVENT_TYPES: dict[str, type[_EventBase]] = {
    "enter_session": EnterSessionEvent,
    "msg_send_fail": MsgSendFailEvent,
    "servicer_status_change": ServicerStatusChangeEvent,
    "session_status_change": SessionStatusChangeEvent,
}


def parse_event(raw: Any) -> KfEvent:
    """Select the event variant by event_type, falling back to UnknownEvent."""
    if isinstance(raw, _EventBase):
        return raw  # type: ignore[return-value]
    data = raw if isinstance(raw, dict) else {}
    model = _EVENT_TYPES.get(str(data.get("event_type") or ""), UnknownEvent)
    return model.model_validate(data)  # type: ignore[return-value]


# ── Messages ─────────────────────────────────────────────


class SyncMessageBase(_Body):
    msgid: str = ""
    open_kfid: str = ""
    external_userid: str = ""
    send_time: int = 0
    origin: int = 0
    servicer_userid: str | None = None

    @property
    def from_customer(self) -> bool:
        return self.origin == Origin.CUSTOMER


class TextMessage(SyncMessageBase):
    msgtype: Literal["text"] = "text"
    text: TextBody = Field(default_factory=TextBody)


class ImageMessage(SyncMessageBase):
    msgtype: Literal["image"] = "image"
    image: MediaBody = Field(default_factory=MediaBody)


class VoiceMessage(SyncMessageBase):
    msgtype: Literal["voice"] = "voice"
    voice: MediaBody = Field(default_factory=MediaBody)


class VideoMessage(SyncMessageBase):
    msgtype: Literal["video"] = "video"
    video: MediaBody = Field(default_factory=MediaBody)


class FileMessage(SyncMessageBase):
    msgtype: Literal["file"] = "file"
    file: MediaBody = Field(default_factory=MediaBody)


class LocationMessage(SyncMessageBase):
    msgtype: Literal["location"] = "location"
    location: LocationBody = Field(default_factory=LocationBody)


class LinkMessage(SyncMessageBase):
    msgtype: Literal["link"] = "link"
    link: LinkBody = Field(default_factory=LinkBody)


class BusinessCardMessage(SyncMessageBase):
    msgtype: Literal["business_card"] = "business_card"
    business_card: BusinessCardBody = Field(default_factory=BusinessCardBody)


class MiniProgramMessage(SyncMessageBase):
    msgtype: Literal["miniprogram"] = "miniprogram"
    miniprogram: MiniProgramBody = Field(default_factory=MiniProgramBody)


class MenuMessage(SyncMessageBase):
    msgtype: Literal["msgmenu"] = "msgmenu"
    msgmenu: MenuBody = Field(default_factory=MenuBody)


class EventMessage(SyncMessageBase):
    msgtype: Literal["event"] = "event"
    event: KfEvent = Field(default_factory=UnknownEvent)

    @field_validator("event", mode="before")
    @classmethod
    def _select_event(cls, value: Any) -> KfEvent:
        return parse_event(value)


class UnknownMessage(SyncMessageBase):
    """Passthrough for msgtypes the bridge does not model."""

    msgtype: str = ""


MediaMessage = Union[ImageMessage, VoiceMessage, VideoMessage, FileMessage]

ContentMessage = Union[
    TextMessage,
    ImageMessage,
    VoiceMessage,
    VideoMessage,
    FileMessage,
    LocationMessage,
    LinkMessage,
    BusinessCardMessage,
    MiniProgramMessage,
    MenuMessage,
    UnknownMessage,
]

SyncMessage = Union[ContentMessage, EventMessage]

_MESSAGE_TYPES: dict[str, type[SyncMessageBase]] = {
    "text": TextMessage,
    "image": ImageMessage,
    "voice": VoiceMessage,
    "video": VideoMessage,
    "file": FileMessage,
    "location": LocationMessage,
    "link": LinkMessage,
    "business_card": BusinessCardMessage,
    "miniprogram": MiniProgramMessage,
    "msgmenu": MenuMessage,
    "event": EventMessage,
}


def parse_sync_message(raw: dict[str, Any]) -> SyncMessage:
    """Select the message variant by msgtype, falling back to UnknownMessage.

    Raises:
        pydantic.ValidationError: If a known variant has malformed fields.
    """
    msgtype = str(raw.get("msgtype") or "")
    model = _MESSAGE_TYPES.get(msgtype, UnknownMessage)
    return model.model_validate(raw)  # type: ignore[return-value]


class SyncPage(BaseModel):
    """One sync_msg response page."""

    next_cursor: str = ""
    has_more: bool = False
    messages: list[SyncMessage] = Field(default_factory=list)
    skipped: int = 0

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SyncPage":
        """Build a page from a raw sync_msg response, skipping malformed items."""
        messages: list[SyncMessage] = []
        skipped = 0
        for item in data.get("msg_list") or []:
            if not isinstance(item, dict):
                skipped += 1
                continue
            try:
                messages.append(parse_sync_message(item))
            except PydanticValidationError:
                skipped += 1
        return cls.model_construct(
            next_cursor=str(data.get("next_cursor") or ""),
            has_more=data.get("has_more") == 1,
            messages=messages,
            skipped=skipped,
        )
