"""
Chat companion tests (scripted replies, quick actions).
"""
import random

from companion import COMPANION_RESPONSES, QUICK_ACTIONS, ChatCompanion


async def test_user_message_stores_reply(store):
    companion = ChatCompanion(store, rng=random.Random(7))
    message, reply = await companion.post("I saw my grandson today")

    assert message["content"] == "I saw my grandson today"
    assert message["is_from_user"] is True
    assert reply["is_from_user"] is False
    assert reply["content"] in COMPANION_RESPONSES
    assert [m["id"] for m in await store.list_chat_messages()] == [message["id"], reply["id"]]


async def test_companion_message_gets_no_reply(store):
    companion = ChatCompanion(store)
    messages = await companion.post("Hello there", is_from_user=False)
    assert len(messages) == 1
    assert len(await store.list_chat_messages()) == 1


async def test_quick_actions(store):
    companion = ChatCompanion(store, rng=random.Random(1))
    for action, text in QUICK_ACTIONS.items():
        message = (await companion.quick_action(action))[0]
        assert message["content"] == text


async def test_unknown_quick_action_sent_as_typed(store):
    companion = ChatCompanion(store)
    message = (await companion.quick_action("sing a song"))[0]
    assert message["content"] == "sing a song"


def test_seeded_replies_repeat(store):
    first = ChatCompanion(store, rng=random.Random(3))
    second = ChatCompanion(store, rng=random.Random(3))
    assert [first.reply_to("hi") for _ in range(5)] == [second.reply_to("hi") for _ in range(5)]
