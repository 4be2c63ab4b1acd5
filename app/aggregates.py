#!/usr/bin/env python3
"""
Field Telemetry Ingest - Aggregation Queries

Fleet-wide reads built on a "latest row per device" sub-query: for each
device_id, the row with the greatest (timestamp, record_id).

- get_latest_per_device  - latest row of a kind for every device
- get_average_kw         - mean kw over roster devices that have analyzer data
- get_devices_status     - per-channel count of roster devices matching a state vector

The roster is the set of devices in device_data. Roster devices with no
digital-input row at all count as matching every requested channel state.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import Table, case, func, or_, select

from schema import DIGITAL_CHANNELS, TABLES, RecordKind, analyzer_data, device_data, digital_inputs
from telemetry_store import TelemetryStore

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "state"


def latest_per_device(table: Table):
    """Sub-query holding only the newest row of each device in table."""
    ranked = select(
        table,
        func.row_number().over(
            partition_by=table.c.device_id,
            order_by=(table.c.timestamp.desc(), table.c.record_id.desc()),
        ).label("rn"),
    ).subquery(f"ranked_{table.name}")

    return (
        select(*[ranked.c[column.name] for column in table.columns])
        .where(ranked.c.rn == 1)
        .subquery(f"latest_{table.name}")
    )


async def get_latest_per_device(store: TelemetryStore, kind: RecordKind) -> List[Dict[str, Any]]:
    latest = latest_per_device(TABLES[kind])
    return await store.fetch_all(select(latest).order_by(latest.c.device_id))


async def get_average_kw(store: TelemetryStore) -> Optional[float]:
    """
    Average kw of the latest analyzer reading of every known device.

    Devices that never reported analyzer data are left out of the average
    rather than counted as zero. Returns None when no device has a reading.
    """
    latest = latest_per_device(analyzer_data)
    query = select(
        func.avg(latest.c.kw).label("average_kw"),
        func.count(latest.c.kw).label("device_count"),
    ).select_from(
        device_data.join(latest, latest.c.device_id == device_data.c.device_id)
    )

    row = await store.fetch_one(query)
    if not row or row["average_kw"] is None:
        return None
    logger.debug(f"Average kw over {row['device_count']} devices: {row['average_kw']}")
    return float(row["average_kw"])


def parse_state_vector(state_vector: str) -> List[bool]:
    """
    Parse 'state1=1&state4=0' into one target value per digital channel.

    Unspecified channels default to False. Keys that are not stateN with N in
    1..9 are ignored.

    Raises:
        ValueError: a channel value is not 0 or 1.
    """
    targets = [False] * len(DIGITAL_CHANNELS)

    for pair in (state_vector or "").split("&"):
        pair = pair.strip()
        if not pair:
            continue
        key, _, value = pair.partition("=")
        key = key.strip()
        value = value.strip()

        if not key.startswith(STATE_KEY_PREFIX) or not key[len(STATE_KEY_PREFIX):].isdigit():
            logger.debug(f"Ignoring unknown state vector key: {key!r}")
            continue
        channel = int(key[len(STATE_KEY_PREFIX):])
        if not 1 <= channel <= len(DIGITAL_CHANNELS):
            logger.debug(f"Ignoring out-of-range channel: {key!r}")
            continue

        if value not in ("0", "1"):
            raise ValueError(f"Invalid value for {key}: {value!r} (expected 0 or 1)")
        targets[channel - 1] = value == "1"

    return targets


async def get_devices_status(store: TelemetryStore, state_vector: str) -> Dict[int, int]:
    """
    For each digital channel, count roster devices whose latest reading
    matches the requested state (or that have no reading at all).

    Channels are counted independently of each other.
    """
    targets = parse_state_vector(state_vector)
    latest = latest_per_device(digital_inputs)

    counts = []
    for number, (channel, target) in enumerate(zip(DIGITAL_CHANNELS, targets), start=1):
        column = latest.c[channel]
        matches = or_(column.is_(None), column == target)
        counts.append(
            func.coalesce(func.sum(case((matches, 1), else_=0)), 0).label(f"{STATE_KEY_PREFIX}{number}")
        )

    query = select(*counts).select_from(
        device_data.outerjoin(latest, latest.c.device_id == device_data.c.device_id)
    )
    row = await store.fetch_one(query) or {}

    return {
        number: int(row.get(f"{STATE_KEY_PREFIX}{number}") or 0)
        for number in range(1, len(DIGITAL_CHANNELS) + 1)
    }
