from chat_ai.payload import build_turns, media_data_uri
from chat_ai.types import Role
from tests.helpers import assistant_msg, user_msg


def test_build_turns_keeps_order_and_roles():
    turns = build_turns([user_msg("u1", "hello"), assistant_msg("m1", "hi there", parent_id="u1")])
    assert [(t.role, t.text) for t in turns] == [(Role.USER, "hello"), (Role.ASSISTANT, "hi there")]


def test_build_turns_skips_empty_messages():
    empty = assistant_msg("m1", parent_id="u1").model_copy(update={"content": "  "})
    assert build_turns([empty]) == []


def test_build_turns_media():
    image = assistant_msg("m1").model_copy(
        update={"content": "", "media_url": "https://example.com/a.png", "media_mime_type": "image/png"}
    )
    turns = build_turns([image])
    assert turns[0].text == ""
    assert turns[0].media_url == "https://example.com/a.png"
    assert build_turns([image], include_media=False) == []


def test_media_data_uri():
    assert media_data_uri("AAAA", "image/png") == "data:image/png;base64,AAAA"
