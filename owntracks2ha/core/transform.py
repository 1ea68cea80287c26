"""
Payload transform between OwnTracks location reports and the
Home Assistant device tracker format.

The transform is a pure field rename. Values are forwarded untouched:
no unit conversion, no rounding.
"""

import json
from dataclasses import asdict, dataclass

from ..exceptions import DecodeError, InvalidRecordError


@dataclass(frozen=True)
class SourceRecord:
    accuracy: int
    altitude: int
    battery: int
    latitude: float
    longitude: float


@dataclass(frozen=True)
class TargetRecord:
    gps_accuracy: int
    altitude: int
    battery_level: int
    latitude: float
    longitude: float


# wire key -> (SourceRecord field, expected type)
_SOURCE_FIELDS = {
    "acc": ("accuracy", int),
    "alt": ("altitude", int),
    "batt": ("battery", int),
    "lat": ("latitude", float),
    "lon": ("longitude", float),
}


def _coerce(key: str, value, expected: type):
    if value is None:
        return expected()
    # bool is a subclass of int, JSON true/false is never a valid reading
    if isinstance(value, bool):
        raise DecodeError(f"Field '{key}' must be a number, got a boolean.")
    if expected is int:
        if not isinstance(value, int):
            raise DecodeError(
                f"Field '{key}' must be an integer, got {type(value).__name__}."
            )
        return value
    if not isinstance(value, (int, float)):
        raise DecodeError(f"Field '{key}' must be a number, got {type(value).__name__}.")
    return float(value)


def decode_source(payload: bytes) -> SourceRecord:
    """
    Decodes a raw MQTT payload into a SourceRecord.

    Unknown keys are ignored and absent keys decode to zero, so a report
    without a position ends up rejected by `validate`.

    Raises:
        DecodeError: if the payload is not a JSON object or a field holds
                     a value of the wrong type.
    """
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError(f"Payload must be a JSON object, got {type(data).__name__}.")

    values = {
        name: _coerce(key, data.get(key), expected)
        for key, (name, expected) in _SOURCE_FIELDS.items()
    }
    return SourceRecord(**values)


def validate(record: SourceRecord) -> None:
    """
    Rejects records without a GPS fix.

    An exact zero latitude or longitude is treated as a missing fix. This
    also rejects genuine readings on the equator or the prime meridian,
    which is a known and accepted limitation.
    """
    if record.latitude == 0 or record.longitude == 0:
        raise InvalidRecordError("Invalid data received: missing latitude or longitude")


def to_target(record: SourceRecord) -> TargetRecord:
    return TargetRecord(
        gps_accuracy=record.accuracy,
        altitude=record.altitude,
        battery_level=record.battery,
        latitude=record.latitude,
        longitude=record.longitude,
    )


def encode_target(record: TargetRecord) -> bytes:
    return json.dumps(asdict(record), separators=(",", ":")).encode("utf-8")


def pretty(record: SourceRecord | TargetRecord) -> str:
    return json.dumps(asdict(record), indent=2)


def transform_payload(payload: bytes) -> tuple[SourceRecord, TargetRecord]:
    """Decodes, validates and renames a payload in one step."""
    source = decode_source(payload)
    validate(source)
    return source, to_target(source)
