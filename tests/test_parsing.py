from chatrelay.auth import Authorizer
from chatrelay.telegram import decode_update
from chatrelay.telegram.parsing import (
    dedupe_attachments,
    extract_attachments,
    has_recoverable_content,
    is_from_self,
    message_from_payload,
    message_text,
    message_to_payload,
    raw_message_from_update,
    sender_id,
)
from tests.factories import BOT_ID, CHAT_ID, USER_ID, bot_message, make_message, message_payload


def test_message_text_prefers_text_over_caption() -> None:
    assert message_text(make_message(1, text="hi")) == "hi"
    assert message_text(make_message(1, caption="cap", photo="p")) == "cap"
    assert message_text(make_message(1)) == ""


def test_sender_and_self_detection() -> None:
    user = make_message(1, text="hi")
    bot = bot_message(2, text="hello")

    assert sender_id(user) == USER_ID
    assert is_from_self(bot, BOT_ID)
    assert not is_from_self(user, BOT_ID)
    assert is_from_self(bot, None)
    assert not is_from_self(bot_message(3, text="x"), 12345)


def test_recoverable_content() -> None:
    assert has_recoverable_content(make_message(1, text="hi"))
    assert has_recoverable_content(make_message(1, photo="p"))
    forwarded = message_payload(1)
    forwarded["forward_origin"] = {"type": "user"}
    assert has_recoverable_content(message_from_payload(forwarded))
    assert not has_recoverable_content(make_message(1))


def test_extract_attachments_uses_largest_photo() -> None:
    msg = make_message(
        1,
        photo="p",
        document={
            "file_id": "d",
            "file_unique_id": "d-u",
            "file_name": "notes.pdf",
            "mime_type": "application/pdf",
            "file_size": 10,
        },
    )

    photo, document = extract_attachments(msg)

    assert photo.file_id == "p"
    assert photo.kind == "photo"
    assert photo.byte_size == 1000
    assert document.kind == "document"
    assert document.file_name == "notes.pdf"


def test_dedupe_attachments_keeps_first() -> None:
    first = extract_attachments(make_message(1, photo="p"))
    again = extract_attachments(make_message(2, photo="p"))

    assert dedupe_attachments([*first, *again]) == first


def test_payload_round_trip_keeps_from_field() -> None:
    msg = make_message(1, text="hi", reply_to=make_message(0, text="parent"))

    payload = message_to_payload(msg)

    assert payload["from"]["id"] == USER_ID
    assert message_from_payload(payload) == msg
    assert message_from_payload({"chat": {"id": 1}}) is None


def test_payload_omits_unset_fields() -> None:
    payload = message_to_payload(make_message(2, text="plain"))

    assert payload["text"] == "plain"
    assert "reply_to_message" not in payload
    assert "photo" not in payload
    assert None not in payload.values()


def test_raw_message_from_update() -> None:
    payload = message_payload(1, text="hi")

    assert raw_message_from_update({"update_id": 1, "message": payload}) == payload
    assert raw_message_from_update({"update_id": 1}) is None
    assert raw_message_from_update(None) is None


def test_decode_update_rejects_garbage() -> None:
    assert decode_update({"update_id": "x"}) is None
    assert decode_update(b"not json") is None
    update = decode_update(b'{"update_id": 3}')
    assert update is not None and update.message is None


def test_authorizer() -> None:
    auth = Authorizer(allowed_chat_ids=frozenset({CHAT_ID}), trusted_user_ids=frozenset({7}))

    assert auth.is_authorized(CHAT_ID, 1)
    assert auth.is_authorized(-5, 7)
    assert not auth.is_authorized(-5, 1)
    assert not auth.is_authorized(CHAT_ID, None)
