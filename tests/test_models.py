"""Tests for sync message parsing into tagged variants."""

from kfbridge.kf.models import (
    EnterSessionEvent,
    EventMessage,
    ImageMessage,
    MenuMessage,
    MsgSendFailEvent,
    Origin,
    SyncPage,
    TextMessage,
    UnknownEvent,
    UnknownMessage,
    parse_event,
    parse_sync_message,
)

from helpers import event_item, page, text_item


class TestParseSyncMessage:
    def test_text_message(self):
        message = parse_sync_message(text_item("m1", "hi"))
        assert isinstance(message, TextMessage)
        assert message.text.content == "hi"
        assert message.from_customer

    def test_servicer_origin_is_not_customer(self):
        message = parse_sync_message(text_item("m1", origin=Origin.SERVICER))
        assert not message.from_customer

    def test_image_message(self):
        raw = {"msgid": "m2", "msgtype": "image", "origin": 3, "image": {"media_id": "MEDIA"}}
        message = parse_sync_message(raw)
        assert isinstance(message, ImageMessage)
        assert message.image.media_id == "MEDIA"

    def test_menu_message_reads_list_alias(self):
        raw = {
            "msgid": "m3",
            "msgtype": "msgmenu",
            "origin": 3,
            "msgmenu": {
                "head_content": "Pick one",
                "list": [
                    {"type": "click", "click": {"id": "1", "content": "Yes"}},
                    {"type": "view", "view": {"url": "https://x", "content": "Docs"}},
                ],
            },
        }
        message = parse_sync_message(raw)
        assert isinstance(message, MenuMessage)
        assert [item.content for item in message.msgmenu.items] == ["Yes", "Docs"]

    def test_unknown_msgtype_falls_back(self):
        message = parse_sync_message({"msgid": "m4", "msgtype": "channels_shop_product", "origin": 3})
        assert isinstance(message, UnknownMessage)
        assert message.msgtype == "channels_shop_product"

    def test_event_message_selects_event_variant(self):
        message = parse_sync_message(event_item("e1", "enter_session", welcome_code="W1"))
        assert isinstance(message, EventMessage)
        assert isinstance(message.event, EnterSessionEvent)
        assert message.event.welcome_code == "W1"


class TestParseEvent:
    def test_msg_send_fail(self):
        event = parse_event({"event_type": "msg_send_fail", "fail_msgid": "f1", "fail_type": 4})
        assert isinstance(event, MsgSendFailEvent)
        assert event.fail_type == 4

    def test_unknown_event_type(self):
        event = parse_event({"event_type": "user_recall_msg"})
        assert isinstance(event, UnknownEvent)
        assert event.event_type == "user_recall_msg"

    def test_non_dict_becomes_unknown(self):
        assert isinstance(parse_event(None), UnknownEvent)


class TestSyncPage:
    def test_from_response(self):
        result = SyncPage.from_response(page([text_item("m1")], next_cursor="c2", has_more=True))
        assert result.next_cursor == "c2"
        assert result.has_more is True
        assert len(result.messages) == 1

    def test_has_more_only_when_one(self):
        assert SyncPage.from_response({"has_more": 0, "msg_list": []}).has_more is False
        assert SyncPage.from_response({"msg_list": []}).has_more is False

    def test_malformed_items_are_skipped(self):
        bad_text = {"msgid": "m2", "msgtype": "text", "origin": "not-a-number"}
        result = SyncPage.from_response(page([text_item("m1"), "junk", bad_text]))
        assert [m.msgid for m in result.messages] == ["m1"]
        assert result.skipped == 2
