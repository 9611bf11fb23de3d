from __future__ import annotations

import json
import uuid

import pytest

from trialrunner.errors import MessageDecodeError
from trialrunner.messages import (
    TRIAL_ID_LENGTH,
    Failure,
    ShouldContinue,
    StartMeasurement,
    StartupAnnounce,
    StopMeasurement,
    VmProperties,
    decode,
    decode_trial_id,
    encode,
    encode_trial_id,
)
from trialrunner.models import Measurement


def test_handshake_is_big_endian_most_then_least_significant() -> None:
    trial_id = uuid.UUID("00112233-4455-6677-8899-aabbccddeeff")
    handshake = encode_trial_id(trial_id)
    assert len(handshake) == TRIAL_ID_LENGTH
    assert handshake == bytes.fromhex("0011223344556677" "8899aabbccddeeff")
    assert decode_trial_id(handshake) == trial_id


def test_handshake_of_random_ids_decodes() -> None:
    for _ in range(50):
        trial_id = uuid.uuid4()
        assert decode_trial_id(encode_trial_id(trial_id)) == trial_id


@pytest.mark.parametrize("data", [b"", b"\x00" * 15, b"\x00" * 17])
def test_handshake_of_wrong_length_is_rejected(data: bytes) -> None:
    with pytest.raises(MessageDecodeError):
        decode_trial_id(data)


def test_messages_are_single_json_lines() -> None:
    line = encode(ShouldContinue(should_continue=False, warmup_complete=True))
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert json.loads(line) == {
        "type": "should_continue",
        "continue": False,
        "warmup_complete": True,
    }


def test_stop_measurement_carries_measurements() -> None:
    measurement = Measurement(magnitude=1500.0, unit="ns", weight=3, description="runtime")
    decoded = decode(encode(StopMeasurement((measurement,))))
    assert decoded == StopMeasurement((measurement,))
    assert decoded.measurements[0].per_rep == 500.0


def test_decoding_each_kind() -> None:
    trial_id = uuid.uuid4()
    assert decode(f'{{"type":"startup_announce","trial_id":"{trial_id}"}}') == StartupAnnounce(
        trial_id
    )
    assert decode('{"type":"start_measurement"}') == StartMeasurement()
    assert decode('{"type":"vm_properties","properties":{"a":1}}') == VmProperties({"a": "1"})
    assert decode('{"type":"failure","exception_summary":"boom"}') == Failure("boom")


@pytest.mark.parametrize(
    "line",
    [
        b'{"type":"teleport"}',
        b"{}",
        b"not json",
        b"[1, 2]",
        b'{"type":"failure"}',
        b'{"type":"startup_announce","trial_id":"nope"}',
        b'{"type":"stop_measurement","measurements":'
        b'[{"magnitude":1,"unit":"ns","weight":0,"description":"x"}]}',
        b"\xff\xfe",
    ],
)
def test_malformed_lines_raise_decode_error(line: bytes) -> None:
    with pytest.raises(MessageDecodeError):
        decode(line)


def test_measurement_weight_must_be_positive() -> None:
    with pytest.raises(ValueError, match="weight"):
        Measurement(magnitude=1.0, unit="ns", weight=0, description="runtime")
