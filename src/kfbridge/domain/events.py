"""Per-item routing of warm-start sync messages.

Events are handled locally (welcome send, logging). Customer content goes
through the DM policy and content extraction, then to the dispatch
collaborator; its replies are sent back to the customer.
"""

from __future__ import annotations

from enum import Enum
from typing import assert_never

from kfbridge.infra.accounts import ResolvedAccount
from kfbridge.kf.client import KfApiClient
from kfbridge.kf.content import extract_inbound_content
from kfbridge.kf.errors import UpstreamError
from kfbridge.kf.media import prune_inbound_media
from kfbridge.kf.models import (
    BusinessCardMessage,
    ContentMessage,
    EnterSessionEvent,
    EventMessage,
    FileMessage,
    ImageMessage,
    LinkMessage,
    LocationMessage,
    MenuMessage,
    MiniProgramMessage,
    MsgSendFailEvent,
    ServicerStatusChangeEvent,
    SessionStatusChangeEvent,
    SyncMessage,
    TextMessage,
    UnknownEvent,
    UnknownMessage,
    VideoMessage,
    VoiceMessage,
)
from kfbridge.kf.outbound import send_text_message
from kfbridge.observability.logging import get_logger
from kfbridge.observability.redaction import hash_identifier, safe_log_context

from .dispatch import DispatchResult, InboundContent, MessageDispatcher, session_key_for
from .policy import check_dm_policy

logger = get_logger(__name__)


class RouteOutcome(str, Enum):
    EVENT = "event"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"
    FAILED = "failed"


class EventRouter:
    """Routes one sync item to its handler."""

    def __init__(self, client: KfApiClient, dispatcher: MessageDispatcher) -> None:
        self._client = client
        self._dispatcher = dispatcher

    def route(self, account: ResolvedAccount, message: SyncMessage) -> RouteOutcome:
        match message:
            case EventMessage():
                self.handle_event(account, message)
                return RouteOutcome.EVENT
            case (
                TextMessage()
                | ImageMessage()
                | VoiceMessage()
                | VideoMessage()
                | FileMessage()
                | LocationMessage()
                | LinkMessage()
                | BusinessCardMessage()
                | MiniProgramMessage()
                | MenuMessage()
                | UnknownMessage()
            ):
                return self.handle_content(account, message)
            case _:
                assert_never(message)

    # ── events ─────────────────────────────────────────────

    def handle_event(self, account: ResolvedAccount, message: EventMessage) -> None:
        event = message.event
        log_ctx = safe_log_context(
            account_id=account.account_id,
            msgid=message.msgid,
            event_type=event.event_type,
        )
        match event:
            case EnterSessionEvent():
                self._send_welcome(account, event)
            case MsgSendFailEvent():
                logger.warning(
                    "message send failed upstream",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx,
                            fail_msgid=event.fail_msgid,
                            fail_type=event.fail_type,
                        )
                    },
                )
            case ServicerStatusChangeEvent():
                logger.info(
                    "servicer status changed",
                    extra={"extra_fields": safe_log_context(**log_ctx, status=event.status)},
                )
            case SessionStatusChangeEvent():
                logger.info(
                    "session status changed",
                    extra={
                        "extra_fields": safe_log_context(**log_ctx, change_type=event.change_type)
                    },
                )
            case UnknownEvent():
                logger.debug("unhandled event", extra={"extra_fields": log_ctx})
            case _:
                assert_never(event)

    def _send_welcome(self, account: ResolvedAccount, event: EnterSessionEvent) -> None:
        welcome_text = (account.config.welcome_text or "").strip()
        if not event.welcome_code or not welcome_text:
            return

        log_ctx = safe_log_context(
            account_id=account.account_id,
            user_hash=hash_identifier(event.external_userid),
        )
        try:
            result = self._client.send_event_message(
                account,
                event.welcome_code,
                "text",
                {"text": {"content": welcome_text}},
            )
        except UpstreamError as e:
            logger.error(
                "welcome message failed",
                extra={"extra_fields": safe_log_context(**log_ctx, errcode=e.errcode)},
            )
            return
        if not result.ok:
            logger.error(
                "welcome message rejected",
                extra={"extra_fields": safe_log_context(**log_ctx, errcode=result.errcode)},
            )
            return
        logger.info("welcome message sent", extra={"extra_fields": log_ctx})

    # ── content ────────────────────────────────────────────

    def handle_content(self, account: ResolvedAccount, message: ContentMessage) -> RouteOutcome:
        log_ctx = safe_log_context(
            account_id=account.account_id,
            msgid=message.msgid,
            msgtype=message.msgtype,
            user_hash=hash_identifier(message.external_userid),
        )

        decision = check_dm_policy(
            account.config.dm_policy, message.external_userid, account.config.allow_from
        )
        if not decision.allowed:
            logger.debug(
                "policy rejected message",
                extra={"extra_fields": safe_log_context(**log_ctx, reason=decision.reason)},
            )
            return RouteOutcome.REJECTED

        extracted = extract_inbound_content(message, account=account, client=self._client)
        inbound = InboundContent(
            account_id=account.account_id,
            open_kfid=message.open_kfid,
            external_userid=message.external_userid,
            msgid=message.msgid,
            msgtype=message.msgtype,
            text=extracted.text,
            media=extracted.media,
            send_time=message.send_time,
            session_key=session_key_for(account.account_id, message.external_userid),
        )

        try:
            result = self._dispatcher.dispatch(inbound)
        except Exception:
            logger.exception("dispatcher raised", extra={"extra_fields": log_ctx})
            return RouteOutcome.FAILED
        finally:
            if extracted.media is not None:
                prune_inbound_media(account.config.inbound_media)

        if result.error:
            logger.error(
                "dispatch returned error",
                extra={"extra_fields": safe_log_context(**log_ctx, error=result.error)},
            )

        self._deliver_replies(account, message, result)
        return RouteOutcome.FAILED if result.error else RouteOutcome.DISPATCHED

    def _deliver_replies(
        self,
        account: ResolvedAccount,
        message: ContentMessage,
        result: DispatchResult,
    ) -> None:
        reply = "\n\n".join(r for r in result.replies if r.strip()).strip()
        if not reply or not account.can_send_active:
            return
        try:
            send_text_message(
                self._client,
                account,
                message.external_userid,
                reply,
                open_kfid=message.open_kfid,
            )
        except UpstreamError as e:
            logger.error(
                "reply send failed",
                extra={
                    "extra_fields": safe_log_context(
                        account_id=account.account_id,
                        msgid=message.msgid,
                        errcode=e.errcode,
                    )
                },
            )
