#!/usr/bin/env python3
"""
Field Telemetry Ingest - Table Definitions

Four record kinds, one table each. Every table carries an auto-incrementing
record_id which orders rows written within the same timestamp tick.

Tables:
- digital_inputs  - 9 boolean channels (ip1..ip9)
- analyzer_data   - kw, per-phase kw, line voltages, line currents, fault code
- analog_inputs   - 2 analog channels (ai1, ai2)
- device_data     - one row per device: last IP address and heartbeat number
"""

from enum import Enum
from typing import Any, Dict, List, Sequence

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Float, Integer, MetaData, String,
    Table, Text,
)


class RecordKind(str, Enum):
    """Kinds of telemetry records; values are the table names."""
    DIGITAL_INPUTS = "digital_inputs"
    ANALYZER_DATA = "analyzer_data"
    ANALOG_INPUTS = "analog_inputs"
    DEVICE_DATA = "device_data"


DIGITAL_CHANNELS = [f"ip{n}" for n in range(1, 10)]
ANALYZER_FIELDS = [
    "kw",
    "kw_l1", "kw_l2", "kw_l3",
    "v_l1", "v_l2", "v_l3",
    "i_l1", "i_l2", "i_l3",
]
ANALOG_CHANNELS = ["ai1", "ai2"]

# Positional columns filled from a message's VALUES array
VALUE_COLUMNS: Dict[RecordKind, List[str]] = {
    RecordKind.DIGITAL_INPUTS: DIGITAL_CHANNELS,
    RecordKind.ANALYZER_DATA: ANALYZER_FIELDS,
    RecordKind.ANALOG_INPUTS: ANALOG_CHANNELS,
}

metadata = MetaData()

# SQLite only autoincrements INTEGER primary keys
_RecordId = BigInteger().with_variant(Integer, "sqlite")


def _record_id() -> Column:
    return Column("record_id", _RecordId, primary_key=True, autoincrement=True)


def _timestamp() -> Column:
    return Column("timestamp", DateTime(timezone=True), nullable=False, index=True)


digital_inputs = Table(
    "digital_inputs", metadata,
    _record_id(),
    Column("device_id", String(50), nullable=False, index=True),
    *[Column(name, Boolean, nullable=False, default=False) for name in DIGITAL_CHANNELS],
    _timestamp(),
)

analyzer_data = Table(
    "analyzer_data", metadata,
    _record_id(),
    Column("device_id", String(50), nullable=False, index=True),
    *[Column(name, Float, nullable=False, default=0.0) for name in ANALYZER_FIELDS],
    Column("fault", Text, nullable=False, default=""),
    _timestamp(),
)

analog_inputs = Table(
    "analog_inputs", metadata,
    _record_id(),
    Column("device_id", String(50), nullable=False, index=True),
    *[Column(name, Float, nullable=False, default=0.0) for name in ANALOG_CHANNELS],
    _timestamp(),
)

device_data = Table(
    "device_data", metadata,
    _record_id(),
    Column("device_id", String(50), nullable=False, unique=True),
    Column("ip_address", String(64)),
    Column("rnum", BigInteger),
    _timestamp(),
)

TABLES: Dict[RecordKind, Table] = {
    RecordKind.DIGITAL_INPUTS: digital_inputs,
    RecordKind.ANALYZER_DATA: analyzer_data,
    RecordKind.ANALOG_INPUTS: analog_inputs,
    RecordKind.DEVICE_DATA: device_data,
}


def pad_values(values: Sequence[Any], width: int, fill: Any = 0) -> List[Any]:
    """Fit a VALUES array to a fixed width: pad missing trailing slots, drop extras."""
    padded = list(values[:width])
    padded.extend([fill] * (width - len(padded)))
    return padded
