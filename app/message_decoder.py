#!/usr/bin/env python3
"""
Field Telemetry Ingest - Message Decoder

Turns a raw MQTT payload into a typed record for one record kind.

Payload format (JSON object):
- ID      - device identifier (required)
- VALUES  - ordered numbers (required for digital, analyzer and analog kinds)
- FAULT   - analyzer fault code (optional)
- RNUM    - heartbeat counter (device data, optional)
- IP      - reporting address (device data, optional)

VALUES shorter than the table width are padded with 0/false rather than
rejected; extra trailing values are dropped.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from schema import RecordKind, VALUE_COLUMNS, pad_values

logger = logging.getLogger(__name__)


class MessageValidationError(ValueError):
    """Payload could not be turned into a record."""


@dataclass
class DigitalInputsRecord:
    device_id: str
    values: List[bool]
    kind: RecordKind = field(default=RecordKind.DIGITAL_INPUTS, init=False)


@dataclass
class AnalyzerRecord:
    device_id: str
    values: List[float]
    fault: str = ""
    kind: RecordKind = field(default=RecordKind.ANALYZER_DATA, init=False)


@dataclass
class AnalogInputsRecord:
    device_id: str
    values: List[float]
    kind: RecordKind = field(default=RecordKind.ANALOG_INPUTS, init=False)


@dataclass
class DeviceDataRecord:
    device_id: str
    rnum: Optional[int] = None
    ip_address: Optional[str] = None
    kind: RecordKind = field(default=RecordKind.DEVICE_DATA, init=False)


TelemetryRecord = Union[DigitalInputsRecord, AnalyzerRecord, AnalogInputsRecord, DeviceDataRecord]


def parse_payload(payload: Union[bytes, str]) -> Dict[str, Any]:
    """Decode a payload as a JSON object."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageValidationError(f"Payload is not UTF-8: {e}") from e

    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MessageValidationError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MessageValidationError(f"Payload must be a JSON object, got {type(data).__name__}")
    return data


def _device_id(data: Dict[str, Any]) -> str:
    device_id = data.get("ID")
    if isinstance(device_id, bool) or device_id is None:
        raise MessageValidationError("Missing device ID")
    if isinstance(device_id, (int, float)):
        device_id = str(device_id)
    if not isinstance(device_id, str) or not device_id.strip():
        raise MessageValidationError("Missing device ID")
    return device_id


def _numbers(data: Dict[str, Any]) -> List[float]:
    values = data.get("VALUES")
    if values is None:
        raise MessageValidationError("Missing VALUES array")
    if not isinstance(values, list):
        raise MessageValidationError(f"VALUES must be an array, got {type(values).__name__}")

    numbers = []
    for position, value in enumerate(values):
        # bool is an int subclass; devices send 0/1 but true/false is harmless
        if not isinstance(value, (int, float)):
            raise MessageValidationError(f"VALUES[{position}] is not a number: {value!r}")
        try:
            as_float = float(value)
        except OverflowError as e:
            raise MessageValidationError(f"VALUES[{position}] is out of range") from e
        if not math.isfinite(as_float):
            raise MessageValidationError(f"VALUES[{position}] is not finite: {value!r}")
        numbers.append(value)
    return numbers


def _fit(kind: RecordKind, values: List[Any], fill: Any) -> List[Any]:
    width = len(VALUE_COLUMNS[kind])
    if len(values) > width:
        logger.debug(f"Dropping {len(values) - width} extra values for {kind.value}")
    return pad_values(values, width, fill)


def decode_message(kind: RecordKind, payload: Union[bytes, str]) -> TelemetryRecord:
    """
    Decode and validate a payload for the given record kind.

    Raises:
        MessageValidationError: payload is unparseable, lacks a device ID,
            or carries values of the wrong type.
    """
    data = parse_payload(payload)
    device_id = _device_id(data)

    if kind == RecordKind.DIGITAL_INPUTS:
        values = [bool(v) for v in _numbers(data)]
        return DigitalInputsRecord(device_id, _fit(kind, values, False))

    if kind == RecordKind.ANALYZER_DATA:
        values = [float(v) for v in _numbers(data)]
        fault = data.get("FAULT")
        if fault is None:
            fault = ""
        elif not isinstance(fault, str):
            fault = str(fault)
        return AnalyzerRecord(device_id, _fit(kind, values, 0.0), fault)

    if kind == RecordKind.ANALOG_INPUTS:
        values = [float(v) for v in _numbers(data)]
        return AnalogInputsRecord(device_id, _fit(kind, values, 0.0))

    rnum = data.get("RNUM")
    if rnum is not None:
        if (isinstance(rnum, bool) or not isinstance(rnum, (int, float))
                or (isinstance(rnum, float) and not rnum.is_integer())):
            raise MessageValidationError(f"RNUM must be an integer: {rnum!r}")
        rnum = int(rnum)

    ip_address = data.get("IP")
    if ip_address is not None and not isinstance(ip_address, str):
        raise MessageValidationError(f"IP must be a string: {ip_address!r}")

    return DeviceDataRecord(device_id, rnum=rnum, ip_address=ip_address)
