import json
import pytest
from jupyter_client.session import DELIM, Session
from wirekernel.codec import Message, create_reply, decode, encode, reply_type, sign
from wirekernel.errors import MalformedFrame, SignatureMismatch
from .kernel_utils import KEY, request, request_frames


def test_round_trip_preserves_message():
    msg = request("execute_request", dict(code="1+1", silent=False), idents=[b"id-a", b"id-b"], buffers=[b"\x00\x01raw"])
    out = decode(KEY, encode(KEY, msg))
    assert out == msg
    assert out.signature == sign(KEY, encode(KEY, msg)[4:])


def test_frame_layout():
    msg, frames = request_frames("kernel_info_request")
    assert frames[0] == b"client-1"
    assert frames[1] == DELIM
    assert frames[2] == sign(KEY, frames[3:]).encode()
    assert json.loads(frames[3])["msg_type"] == "kernel_info_request"
    assert [json.loads(f) for f in frames[4:7]] == [{}, {}, {}]


@pytest.mark.parametrize("idx", [3, 4, 5, 6, 7])
def test_flipped_byte_fails_signature(idx):
    _, frames = request_frames("execute_request", dict(code="x = 1"), buffers=[b"payload"])
    frame = bytearray(frames[idx])
    frame[len(frame) // 2] ^= 0x01
    frames[idx] = bytes(frame)
    with pytest.raises(SignatureMismatch) as info: decode(KEY, frames)
    assert info.value.expected == sign(KEY, frames[3:])


def test_wrong_secret_fails():
    _, frames = request_frames("kernel_info_request")
    with pytest.raises(SignatureMismatch): decode(b"other-secret", frames)


def test_signature_checked_before_parse():
    _, frames = request_frames("kernel_info_request")
    frames[4] = b"{not json"
    with pytest.raises(SignatureMismatch): decode(KEY, frames)


def test_malformed_json_with_valid_signature():
    bodies = [b"{not json", b"{}", b"{}", b"{}"]
    frames = [b"client", DELIM, sign(KEY, bodies).encode()] + bodies
    with pytest.raises(MalformedFrame, match="header"): decode(KEY, frames)


def test_non_object_body_is_malformed():
    bodies = [b"[]", b"{}", b"{}", b"{}"]
    frames = [DELIM, sign(KEY, bodies).encode()] + bodies
    with pytest.raises(MalformedFrame): decode(KEY, frames)


def test_missing_delimiter_and_short_messages():
    with pytest.raises(MalformedFrame, match="delimiter"): decode(KEY, [b"a", b"b"])
    with pytest.raises(MalformedFrame): decode(KEY, [b"client", DELIM, b"sig", b"{}"])


def test_empty_key_is_unsigned():
    msg, frames = request_frames("kernel_info_request", key=b"")
    assert frames[2] == b""
    frames[2] = b"anything"
    assert decode(b"", frames) == msg


def test_interop_with_jupyter_client_session():
    session = Session(key=KEY)
    sent = session.msg("execute_request", dict(code="print(1)"))
    frames = session.serialize(sent, ident=[b"routing"])
    msg = decode(KEY, frames)
    assert msg.idents == [b"routing"]
    assert msg.header["msg_id"] == sent["header"]["msg_id"]
    assert msg.content == dict(code="print(1)")

    reply = create_reply(msg, "execute_reply", dict(status="ok", execution_count=1))
    idents, msg_list = session.feed_identities(encode(KEY, reply))
    parsed = session.deserialize(msg_list)
    assert idents == [b"routing"]
    assert parsed["parent_header"]["msg_id"] == sent["header"]["msg_id"]
    assert parsed["content"]["execution_count"] == 1


def test_create_reply_links_to_request():
    msg = request("shutdown_request", dict(restart=False), idents=[b"a", b"b"])
    reply = create_reply(msg, "shutdown_reply", dict(restart=False))
    assert reply.idents == msg.idents and reply.delimiter == msg.delimiter
    assert reply.parent_header == msg.header
    assert reply.header["msg_id"] != msg.header["msg_id"]
    assert reply.header["session"] == msg.header["session"]
    assert reply.header["username"] == msg.header["username"]
    assert reply.header["msg_type"] == "shutdown_reply"
    assert reply.header["version"] == "5.3"


def test_broadcast_reply_replaces_idents():
    msg = request("execute_request", dict(code=""))
    status = create_reply(msg, "status", dict(execution_state="busy"), idents=[b"kernel.x.status"])
    assert status.idents == [b"kernel.x.status"]
    assert status.parent_header == msg.header


def test_reply_type():
    assert reply_type("kernel_info_request") == "kernel_info_reply"
    assert reply_type("is_complete_request") == "is_complete_reply"


def test_message_equality_ignores_signature():
    msg = request("kernel_info_request")
    assert msg == Message(msg.idents, msg.header, msg.parent_header, msg.metadata, msg.content, signature="abc")
