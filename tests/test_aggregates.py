#!/usr/bin/env python3
"""
Tests for the fleet-wide aggregation queries.

Run with: pytest tests/test_aggregates.py -v
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from aggregates import get_average_kw, get_devices_status, get_latest_per_device, parse_state_vector
from schema import RecordKind


# =============================================================================
# State Vector Parsing Tests
# =============================================================================

class TestParseStateVector:

    def test_single_channel(self):
        assert parse_state_vector("state1=1") == [True] + [False] * 8

    def test_multiple_channels(self):
        targets = parse_state_vector("state1=1&state3=1&state9=1&state2=0")
        assert targets == [True, False, True, False, False, False, False, False, True]

    def test_empty_defaults_to_zero(self):
        assert parse_state_vector("") == [False] * 9

    def test_unknown_and_out_of_range_keys_ignored(self):
        assert parse_state_vector("foo=1&state0=1&state10=1&state2=1") == [False, True] + [False] * 7

    def test_whitespace_and_empty_pairs_tolerated(self):
        assert parse_state_vector(" state4 = 1 && ") == [False] * 3 + [True] + [False] * 5

    @pytest.mark.parametrize("value", ["2", "yes", ""])
    def test_bad_value_rejected(self, value):
        with pytest.raises(ValueError):
            parse_state_vector(f"state1={value}")


# =============================================================================
# Average KW Tests
# =============================================================================

class TestAverageKW:

    @pytest.mark.asyncio
    async def test_devices_without_readings_excluded(self, store):
        for device in ("dev1", "dev2", "dev3"):
            await store.upsert_device_data(device)
        await store.insert_analyzer_data("dev1", [10.0])
        await store.insert_analyzer_data("dev2", [20.0])

        assert await get_average_kw(store) == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_only_latest_reading_counts(self, store):
        await store.upsert_device_data("dev1")
        await store.upsert_device_data("dev2")
        await store.insert_analyzer_data("dev1", [100.0])
        await store.insert_analyzer_data("dev1", [10.0])
        await store.insert_analyzer_data("dev2", [30.0])

        assert await get_average_kw(store) == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_devices_outside_roster_excluded(self, store):
        await store.upsert_device_data("dev1")
        await store.insert_analyzer_data("dev1", [10.0])
        await store.insert_analyzer_data("stranger", [1000.0])

        assert await get_average_kw(store) == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_timestamp_tie_uses_last_insert(self, store):
        await store.upsert_device_data("dev1")
        with patch("telemetry_store.datetime") as clock:
            clock.now.return_value = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
            await store.insert_analyzer_data("dev1", [100.0])
            await store.insert_analyzer_data("dev1", [10.0])

        assert await get_average_kw(store) == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_no_data(self, store):
        await store.upsert_device_data("dev1")
        assert await get_average_kw(store) is None

    @pytest.mark.asyncio
    async def test_empty_roster(self, store):
        assert await get_average_kw(store) is None


# =============================================================================
# Devices Status Tests
# =============================================================================

class TestDevicesStatus:

    @pytest.mark.asyncio
    async def test_never_reported_device_matches(self, store):
        await store.upsert_device_data("dev1")
        await store.upsert_device_data("dev2")
        await store.insert_digital_inputs("dev1", [1])

        counts = await get_devices_status(store, "state1=1")

        assert counts[1] == 2
        # dev1 has ip2..ip9 = 0, target 0; dev2 never reported
        assert all(counts[n] == 2 for n in range(2, 10))

    @pytest.mark.asyncio
    async def test_mismatch_not_counted(self, store):
        await store.upsert_device_data("dev1")
        await store.upsert_device_data("dev2")
        await store.insert_digital_inputs("dev1", [0, 1])
        await store.insert_digital_inputs("dev2", [1, 1])

        counts = await get_devices_status(store, "state1=1&state2=1")

        assert counts[1] == 1
        assert counts[2] == 2
        assert counts[3] == 2

    @pytest.mark.asyncio
    async def test_uses_latest_reading_only(self, store):
        await store.upsert_device_data("dev1")
        await store.insert_digital_inputs("dev1", [1])
        await store.insert_digital_inputs("dev1", [0])

        counts = await get_devices_status(store, "state1=1")
        assert counts[1] == 0

    @pytest.mark.asyncio
    async def test_channels_counted_independently(self, store):
        await store.upsert_device_data("dev1")
        await store.insert_digital_inputs("dev1", [1, 0, 1])

        counts = await get_devices_status(store, "state1=1&state2=1&state3=1")
        assert (counts[1], counts[2], counts[3]) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_returns_all_nine_channels(self, store):
        counts = await get_devices_status(store, "")
        assert counts == {n: 0 for n in range(1, 10)}

    @pytest.mark.asyncio
    async def test_bad_vector_rejected(self, store):
        with pytest.raises(ValueError):
            await get_devices_status(store, "state1=on")


# =============================================================================
# Latest Per Device Tests
# =============================================================================

class TestLatestPerDevice:

    @pytest.mark.asyncio
    async def test_one_row_per_device(self, store):
        await store.insert_analog_inputs("dev1", [1.0, 1.0])
        await store.insert_analog_inputs("dev2", [2.0, 2.0])
        await store.insert_analog_inputs("dev1", [3.0, 3.0])

        rows = await get_latest_per_device(store, RecordKind.ANALOG_INPUTS)

        assert [(r["device_id"], r["ai1"]) for r in rows] == [("dev1", 3.0), ("dev2", 2.0)]
        assert "rn" not in rows[0]

    @pytest.mark.asyncio
    async def test_timestamp_tie_picks_last_insert(self, store):
        with patch("telemetry_store.datetime") as clock:
            clock.now.return_value = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
            await store.insert_analog_inputs("dev1", [1.0, 1.0])
            await store.insert_analog_inputs("dev1", [3.0, 3.0])

        rows = await get_latest_per_device(store, RecordKind.ANALOG_INPUTS)

        assert [(r["device_id"], r["ai1"]) for r in rows] == [("dev1", 3.0)]
