import pytest

from meshpub.message import (
    Message,
    MessageSignaturePolicy,
    default_msg_id_fn,
    unmarshal_message,
)


def _sample():
    return Message(
        from_peer=b"\x01",
        data=b"abc",
        seqno=b"123",
        topic="foo",
        signature=b"sig",
        key=b"key",
    )


def test_marshal_wire_bytes():
    msg = Message(from_peer=b"\x01", data=b"abc", topic="foo")
    assert msg.marshal() == b"\x0a\x01\x01\x12\x03abc\x22\x03foo"


def test_marshal_empty_message():
    assert Message().marshal() == b""


def test_round_trip():
    msg = _sample()
    decoded = unmarshal_message(msg.marshal())
    assert decoded == msg


def test_round_trip_keeps_empty_but_present_fields():
    msg = Message(data=b"", topic="")
    decoded = unmarshal_message(msg.marshal())
    assert decoded.data == b""
    assert decoded.topic == ""
    assert decoded.from_peer is None


def test_local_metadata_not_marshalled():
    msg = _sample()
    with_meta = Message(**{**msg.__dict__, "received_from": b"peer", "local": True})
    assert with_meta.marshal() == msg.marshal()


def test_unsigned_drops_signature_and_key():
    msg = _sample()
    stripped = msg.unsigned()
    assert stripped.signature is None
    assert stripped.key is None
    assert stripped.data == msg.data
    assert msg.signature == b"sig"


def test_unknown_field_skipped():
    msg = _sample()
    data = b"\x38\x05" + msg.marshal() + b"\x4a\x02zz"
    assert unmarshal_message(data) == msg


def test_truncated_field_raises():
    with pytest.raises(ValueError):
        unmarshal_message(b"\x0a\x05ab")


def test_bad_wire_type_raises():
    with pytest.raises(ValueError):
        unmarshal_message(b"\x0b")


def test_known_field_wrong_wire_type_raises():
    with pytest.raises(ValueError):
        unmarshal_message(b"\x08\x01")


def test_default_msg_id():
    msg = Message(from_peer=b"peer", seqno=b"\x00\x01")
    assert default_msg_id_fn(msg) == b"peer" + b"\x00\x01"
    assert default_msg_id_fn(Message()) == b""


@pytest.mark.parametrize(
    "policy, sign, verify",
    [
        (MessageSignaturePolicy.STRICT_SIGN, True, True),
        (MessageSignaturePolicy.STRICT_NO_SIGN, False, True),
        (MessageSignaturePolicy.LAX_SIGN, True, False),
        (MessageSignaturePolicy.LAX_NO_SIGN, False, False),
    ],
)
def test_policy_flags(policy, sign, verify):
    assert policy.must_sign() is sign
    assert policy.must_verify() is verify


def test_policy_clearing_signing():
    policy = MessageSignaturePolicy(
        MessageSignaturePolicy.STRICT_SIGN & ~MessageSignaturePolicy.SIGNING
    )
    assert policy == MessageSignaturePolicy.STRICT_NO_SIGN
    assert policy.must_sign() is False
    assert policy.must_verify() is True