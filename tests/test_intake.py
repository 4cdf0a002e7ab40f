from messaging.intake import (
    UPDATE_BUSINESS_CONNECTION,
    UPDATE_BUSINESS_MESSAGE,
    UPDATE_MESSAGE,
    UPDATE_NONE,
    chat_id_of,
    parse_update,
)


def telegram_message(**overrides):
    message = {
        "message_id": 7,
        "chat": {"id": 1001, "type": "private"},
        "from": {"id": 42, "first_name": "Ana"},
        "text": "hello",
    }
    message.update(overrides)
    return message


def test_private_message():
    kind, message = parse_update({"update_id": 1, "message": telegram_message()})

    assert kind == UPDATE_MESSAGE
    assert (message.chat_id, message.message_id, message.user_id) == (1001, 7, 42)
    assert message.first_name == "Ana"
    assert message.text == "hello"
    assert message.is_eligible and not message.is_business


def test_business_message_keeps_connection():
    kind, message = parse_update({
        "business_message": telegram_message(business_connection_id="biz-1")
    })

    assert kind == UPDATE_BUSINESS_MESSAGE
    assert message.business_connection_id == "biz-1"
    assert message.is_business and message.is_eligible


def test_plain_message_ignores_stray_connection_id():
    _, message = parse_update({"message": telegram_message(business_connection_id="biz-1")})
    assert message.business_connection_id is None


def test_group_message_is_not_eligible():
    _, message = parse_update({"message": telegram_message(chat={"id": -5, "type": "group"})})
    assert not message.is_eligible


def test_caption_and_media_placeholder():
    photo = telegram_message(text=None, caption="look at this")
    sticker = telegram_message(text=None)

    assert parse_update({"message": photo})[1].text == "look at this"
    assert parse_update({"message": sticker}, media_placeholder="[media]")[1].text == "[media]"


def test_missing_identifiers():
    _, message = parse_update({"message": {"message_id": 7, "text": "hi"}})

    assert message.chat_id is None
    assert not message.has_identifiers


def test_business_connection_and_other_updates():
    assert parse_update({"business_connection": {"id": "biz-1"}}) == (UPDATE_BUSINESS_CONNECTION, None)
    assert parse_update({"update_id": 3, "edited_message": telegram_message()}) == (UPDATE_NONE, None)
    assert parse_update(["not", "a", "dict"]) == (UPDATE_NONE, None)


def test_chat_id_of():
    assert chat_id_of({"message": telegram_message()}) == 1001
    assert chat_id_of({"business_message": telegram_message()}) == 1001
    assert chat_id_of({"edited_message": telegram_message()}) is None
    assert chat_id_of(None) is None
