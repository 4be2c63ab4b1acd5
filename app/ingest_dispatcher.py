#!/usr/bin/env python3
"""
Field Telemetry Ingest - Dispatcher

Runs one inbound message through the pipeline:

    topic -> TopicRouter -> decode_message -> TelemetryStore insert

Every failure is handled here: unroutable topics and invalid payloads are
dropped with a warning, storage failures are logged and the message is lost
(no retry, no redelivery). Nothing is raised back to the MQTT loop.
"""

import logging
from typing import Dict, Union

from sqlalchemy.exc import SQLAlchemyError

from message_decoder import (
    AnalogInputsRecord, AnalyzerRecord, DeviceDataRecord, DigitalInputsRecord,
    MessageValidationError, TelemetryRecord, decode_message,
)
from schema import RecordKind
from telemetry_store import TelemetryStore
from topic_router import TopicRouter

logger = logging.getLogger(__name__)


class IngestDispatcher:
    """Routes, validates and stores telemetry messages one at a time."""

    def __init__(self, router: TopicRouter, store: TelemetryStore):
        self.router = router
        self.store = store
        self.stats: Dict[str, int] = {
            'received': 0,
            'unroutable': 0,
            'invalid': 0,
            'storage_errors': 0,
            **{kind.value: 0 for kind in RecordKind},
        }

    async def handle_message(self, topic: str, payload: Union[bytes, str]) -> bool:
        """Process one message; returns True when a row was written."""
        self.stats['received'] += 1
        logger.debug(f"Received message on topic {topic}: {payload!r}")

        kind = self.router.route(topic)
        if kind is None:
            self.stats['unroutable'] += 1
            logger.warning(f"Unhandled topic: {topic}")
            return False

        try:
            record = decode_message(kind, payload)
        except MessageValidationError as e:
            self.stats['invalid'] += 1
            logger.warning(f"Invalid message on topic {topic}: {e}")
            return False

        return await self.dispatch(record)

    async def dispatch(self, record: TelemetryRecord) -> bool:
        """Insert a decoded record; storage failures drop the message."""
        try:
            if isinstance(record, DigitalInputsRecord):
                await self.store.insert_digital_inputs(record.device_id, record.values)
            elif isinstance(record, AnalyzerRecord):
                await self.store.insert_analyzer_data(record.device_id, record.values, record.fault)
            elif isinstance(record, AnalogInputsRecord):
                await self.store.insert_analog_inputs(record.device_id, record.values)
            elif isinstance(record, DeviceDataRecord):
                await self.store.upsert_device_data(record.device_id, record.rnum, record.ip_address)
            else:
                raise TypeError(f"Unsupported record type: {type(record).__name__}")
        except (SQLAlchemyError, OSError) as e:
            self.stats['storage_errors'] += 1
            logger.error(f"Dropping {record.kind.value} message from device {record.device_id}: {e}")
            return False

        self.stats[record.kind.value] += 1
        logger.info(f"{record.kind.value} stored for device {record.device_id}")
        return True
