from tenantchat.codec import decode, decode_text, encode, encode_text
from tenantchat.constants import E_SEND_MESSAGE, S_NEW_MESSAGE
from tenantchat.envelope import make_envelope, make_request, validate_envelope


def test_codec_round_trip_binary() -> None:
    env = make_envelope(S_NEW_MESSAGE, data={"message": "hello", "roomId": "tenant_1"})
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    validate_envelope(decoded)


def test_codec_text_frames_are_compact_json() -> None:
    env = make_request(E_SEND_MESSAGE, "héllo", "room_1_abc")
    text = encode_text(env)
    assert " " not in text.replace("héllo", "")
    assert "héllo" in text
    assert decode_text(text) == env
