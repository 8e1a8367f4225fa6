from __future__ import annotations

import asyncio

from adapters.sqlite_storage import SQLiteStorage
from core.config import RelayConfig
from core.directory import ProfileDirectory, TopicDirectory
from core.filters import FilterSet
from core.models import AckKind, OutboundMessage
from core.relay import RelayEngine


class FakeDestination:
    def __init__(self, react_error: Exception = None) -> None:
        self.reactions: list[tuple[int, int, AckKind]] = []
        self.react_error = react_error

    async def react(self, chat_id: int, message_id: int, ack: AckKind) -> None:
        self.reactions.append((chat_id, message_id, ack))
        if self.react_error is not None:
            raise self.react_error


class FakeSource:
    def __init__(self, error: Exception = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error = error

    async def send_text(self, thread_id: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((thread_id, text))


def _relay(tmp_path, source: FakeSource, destination: FakeDestination, filters=()) -> RelayEngine:
    storage = SQLiteStorage(str(tmp_path / "relay.db"))
    storage.init_db()
    topics = TopicDirectory(storage)
    topics.bind("thread-1", 500)
    filter_set = FilterSet(storage)
    for word in filters:
        filter_set.add(word)
    return RelayEngine(
        destination=destination,
        source=source,
        topics=topics,
        profiles=ProfileDirectory(storage),
        filters=filter_set,
        config=RelayConfig(),
    )


def _outbound(text="reply", topic_id: int = 500, message_id: int = 9) -> OutboundMessage:
    return OutboundMessage(chat_id=-100123, message_id=message_id, topic_id=topic_id, text=text, sender_id=1)


def test_text_reply_is_relayed_and_acknowledged(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound("  see you soon ")))

    assert ack is AckKind.SUCCESS
    assert source.sent == [("thread-1", "see you soon")]
    assert destination.reactions == [(-100123, 9, AckKind.SUCCESS)]


def test_unmapped_topic_gets_unknown(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound(topic_id=777)))

    assert ack is AckKind.UNKNOWN
    assert source.sent == []
    assert destination.reactions == [(-100123, 9, AckKind.UNKNOWN)]


def test_non_text_message_gets_unknown(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound(text=None)))

    assert ack is AckKind.UNKNOWN
    assert source.sent == []
    assert len(destination.reactions) == 1


def test_blank_text_fails(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound(text="   ")))

    assert ack is AckKind.FAILED
    assert source.sent == []
    assert destination.reactions == [(-100123, 9, AckKind.FAILED)]


def test_filtered_reply_is_not_sent(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination, filters=["Draft"])

    ack = asyncio.run(relay.handle_outbound(_outbound("draft: do not send")))

    assert ack is AckKind.FILTERED
    assert source.sent == []
    assert destination.reactions == [(-100123, 9, AckKind.FILTERED)]


def test_send_failure_is_acknowledged_once(tmp_path) -> None:
    source, destination = FakeSource(error=ConnectionError("feedback_required")), FakeDestination()
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound()))

    assert ack is AckKind.FAILED
    assert destination.reactions == [(-100123, 9, AckKind.FAILED)]


def test_reaction_failure_is_swallowed(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination(react_error=RuntimeError("REACTION_INVALID"))
    relay = _relay(tmp_path, source, destination)

    ack = asyncio.run(relay.handle_outbound(_outbound()))

    assert ack is AckKind.SUCCESS
    assert source.sent == [("thread-1", "reply")]
    assert len(destination.reactions) == 1


def test_each_message_gets_exactly_one_acknowledgment(tmp_path) -> None:
    source, destination = FakeSource(), FakeDestination()
    relay = _relay(tmp_path, source, destination, filters=["skip"])

    async def scenario() -> list[AckKind]:
        return list(
            await asyncio.gather(
                relay.handle_outbound(_outbound("one", message_id=1)),
                relay.handle_outbound(_outbound("skip me", message_id=2)),
                relay.handle_outbound(_outbound(None, message_id=3)),
                relay.handle_outbound(_outbound("x", topic_id=1, message_id=4)),
            )
        )

    acks = asyncio.run(scenario())
    assert acks == [AckKind.SUCCESS, AckKind.FILTERED, AckKind.UNKNOWN, AckKind.UNKNOWN]
    assert sorted(message_id for _, message_id, _ in destination.reactions) == [1, 2, 3, 4]
