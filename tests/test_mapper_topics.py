from __future__ import annotations

from telethon.tl.types import MessageMediaWebPage, WebPageEmpty

from adapters.telegram_mapper import build_outbound, topic_id_from_message


class DummyReply:
    def __init__(
        self,
        forum_topic: bool,
        reply_to_top_id: "int | None",
        reply_to_msg_id: "int | None",
    ) -> None:
        self.forum_topic = forum_topic
        self.reply_to_top_id = reply_to_top_id
        self.reply_to_msg_id = reply_to_msg_id


class DummyMessage:
    def __init__(
        self,
        *,
        chat_id: int,
        message_id: int,
        text: "str | None",
        reply_to=None,
        media=None,
        sender_id: int = 1,
    ) -> None:
        self.chat_id = chat_id
        self.id = message_id
        self.raw_text = text
        self.reply_to = reply_to
        self.media = media
        self.sender_id = sender_id


def test_build_outbound_topic_id_from_reply_to_top_id() -> None:
    reply_to = DummyReply(forum_topic=True, reply_to_top_id=555, reply_to_msg_id=111)
    message = DummyMessage(chat_id=-100123, message_id=10, text="hello", reply_to=reply_to)

    outbound = build_outbound(message)
    assert outbound.topic_id == 555
    assert outbound.chat_id == -100123
    assert outbound.message_id == 10
    assert outbound.text == "hello"


def test_build_outbound_topic_id_fallback_to_reply_to_msg_id() -> None:
    reply_to = DummyReply(forum_topic=True, reply_to_top_id=None, reply_to_msg_id=777)
    message = DummyMessage(chat_id=-100123, message_id=10, text="hello", reply_to=reply_to)

    assert build_outbound(message).topic_id == 777


def test_build_outbound_no_forum_topic_flag() -> None:
    message = DummyMessage(chat_id=-100123, message_id=10, text="hello", reply_to=None)
    assert build_outbound(message) is None

    plain_reply = DummyReply(forum_topic=False, reply_to_top_id=None, reply_to_msg_id=3)
    assert topic_id_from_message(DummyMessage(chat_id=1, message_id=2, text="x", reply_to=plain_reply)) is None


def test_build_outbound_media_has_no_text() -> None:
    reply_to = DummyReply(forum_topic=True, reply_to_top_id=555, reply_to_msg_id=111)
    message = DummyMessage(chat_id=-100123, message_id=10, text="caption", reply_to=reply_to, media=object())

    outbound = build_outbound(message)
    assert outbound.topic_id == 555
    assert outbound.text is None


def test_build_outbound_link_preview_is_still_text() -> None:
    reply_to = DummyReply(forum_topic=True, reply_to_top_id=555, reply_to_msg_id=111)
    media = MessageMediaWebPage(webpage=WebPageEmpty(id=1))
    message = DummyMessage(
        chat_id=-100123,
        message_id=10,
        text="https://example.com",
        reply_to=reply_to,
        media=media,
    )

    assert build_outbound(message).text == "https://example.com"


def test_build_outbound_missing_text_is_empty_string() -> None:
    reply_to = DummyReply(forum_topic=True, reply_to_top_id=555, reply_to_msg_id=111)
    message = DummyMessage(chat_id=-100123, message_id=10, text=None, reply_to=reply_to)

    assert build_outbound(message).text == ""
