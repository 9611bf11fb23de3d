"""Wire format for runner/worker communication.

A worker opens a TCP connection to the broker and first writes its trial id as
16 raw bytes: the most significant half as a big-endian unsigned 64-bit
integer, then the least significant half likewise. Everything after that is
newline-delimited UTF-8 JSON, one object per message, tagged by ``type``.
"""

from __future__ import annotations

import json
import struct
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import MessageDecodeError
from .models import Measurement

TRIAL_ID_LENGTH = 16
_TRIAL_ID_STRUCT = struct.Struct(">QQ")
_HALF_MASK = (1 << 64) - 1


def encode_trial_id(trial_id: uuid.UUID) -> bytes:
    """Encode a trial id as the 16-byte connection handshake.

    Returns:
        The handshake bytes.
    """
    value = trial_id.int
    return _TRIAL_ID_STRUCT.pack(value >> 64, value & _HALF_MASK)


def decode_trial_id(data: bytes) -> uuid.UUID:
    """Decode the 16-byte connection handshake.

    Returns:
        The trial id.

    Raises:
        MessageDecodeError: If ``data`` is not exactly 16 bytes long.
    """
    if len(data) != TRIAL_ID_LENGTH:
        msg = f"Expected {TRIAL_ID_LENGTH} handshake bytes, got {len(data)}"
        raise MessageDecodeError(msg)
    most, least = _TRIAL_ID_STRUCT.unpack(data)
    return uuid.UUID(int=(most << 64) | least)


@dataclass(frozen=True)
class StartupAnnounce:
    """First message from a worker, confirming it is alive."""

    trial_id: uuid.UUID


@dataclass(frozen=True)
class VmProperties:
    """Properties of the interpreter the worker runs on."""

    properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StartMeasurement:
    """The worker is about to start a timed interval."""


@dataclass(frozen=True)
class StopMeasurement:
    """The worker finished a timed interval."""

    measurements: tuple[Measurement, ...] = ()


@dataclass(frozen=True)
class ShouldContinue:
    """The runner's answer after each interval."""

    should_continue: bool
    warmup_complete: bool


@dataclass(frozen=True)
class Failure:
    """The benchmark raised inside the worker."""

    exception_summary: str


@dataclass(frozen=True)
class WorkerLog:
    """Free-form progress text, written to the trial output only."""

    text: str


Message = (
    StartupAnnounce
    | VmProperties
    | StartMeasurement
    | StopMeasurement
    | ShouldContinue
    | Failure
    | WorkerLog
)


def _to_payload(message: Message) -> dict[str, Any]:
    match message:
        case StartupAnnounce(trial_id=trial_id):
            return {"type": "startup_announce", "trial_id": str(trial_id)}
        case VmProperties(properties=properties):
            return {"type": "vm_properties", "properties": dict(properties)}
        case StartMeasurement():
            return {"type": "start_measurement"}
        case StopMeasurement(measurements=measurements):
            return {
                "type": "stop_measurement",
                "measurements": [m.to_dict() for m in measurements],
            }
        case ShouldContinue(should_continue=should_continue, warmup_complete=warmup_complete):
            return {
                "type": "should_continue",
                "continue": should_continue,
                "warmup_complete": warmup_complete,
            }
        case Failure(exception_summary=summary):
            return {"type": "failure", "exception_summary": summary}
        case WorkerLog(text=text):
            return {"type": "worker_log", "text": text}
    msg = f"Not a wire message: {message!r}"
    raise TypeError(msg)


def _from_payload(payload: dict[str, Any]) -> Message:
    match payload.get("type"):
        case "startup_announce":
            return StartupAnnounce(uuid.UUID(payload["trial_id"]))
        case "vm_properties":
            properties = payload["properties"]
            return VmProperties({str(k): str(v) for k, v in properties.items()})
        case "start_measurement":
            return StartMeasurement()
        case "stop_measurement":
            return StopMeasurement(
                tuple(Measurement.from_dict(item) for item in payload["measurements"])
            )
        case "should_continue":
            return ShouldContinue(bool(payload["continue"]), bool(payload["warmup_complete"]))
        case "failure":
            return Failure(str(payload["exception_summary"]))
        case "worker_log":
            return WorkerLog(str(payload["text"]))
        case other:
            msg = f"Unknown message type: {other!r}"
            raise MessageDecodeError(msg)


def encode(message: Message) -> bytes:
    """Serialise a message as one JSON line.

    Returns:
        UTF-8 bytes terminated by a newline.
    """
    return json.dumps(_to_payload(message), separators=(",", ":")).encode() + b"\n"


def decode(line: bytes | str) -> Message:
    """Parse one JSON line into a message.

    Returns:
        The decoded message.

    Raises:
        MessageDecodeError: If the line is not valid JSON, has an unknown
            ``type`` or is missing required fields.
    """
    try:
        payload = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        msg = f"Malformed message: {e}"
        raise MessageDecodeError(msg) from e
    if not isinstance(payload, dict):
        msg = f"Expected a JSON object, got {type(payload).__name__}"
        raise MessageDecodeError(msg)
    try:
        return _from_payload(payload)
    except MessageDecodeError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        msg = f"Invalid {payload.get('type')!r} message: {e}"
        raise MessageDecodeError(msg) from e
