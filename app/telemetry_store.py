#!/usr/bin/env python3
"""
Field Telemetry Ingest - Storage Layer

Owns the connection pool and every statement run against the four telemetry
tables. Each operation borrows one pooled connection inside an `async with`
block, so the connection goes back to the pool whether the statement succeeds
or fails. Storage errors are logged here and re-raised to the caller.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import DateTime, bindparam, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from schema import (
    TABLES, VALUE_COLUMNS, RecordKind, metadata, pad_values,
)
from settings import DB_MAX_OVERFLOW, DB_POOL_SIZE

logger = logging.getLogger(__name__)


def create_engine_from_url(
    database_url: str,
    pool_size: int = DB_POOL_SIZE,
    max_overflow: int = DB_MAX_OVERFLOW,
) -> AsyncEngine:
    """Create an async engine with a bounded connection pool."""
    try:
        engine = create_async_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=False
        )
    except Exception as e:
        logger.error(f"Failed to create database engine: {e}")
        raise
    logger.info(f"Database connection pool created (size={pool_size}, overflow={max_overflow})")
    return engine


def _insert_statement(kind: RecordKind, extra_columns: Sequence[str] = ()):
    columns = ["device_id", *VALUE_COLUMNS[kind], *extra_columns, "timestamp"]
    return text(f"""
        INSERT INTO {kind.value} ({", ".join(columns)})
        VALUES ({", ".join(f":{name}" for name in columns)})
    """).bindparams(bindparam("timestamp", type_=DateTime(timezone=True)))


INSERT_DIGITAL_INPUTS = _insert_statement(RecordKind.DIGITAL_INPUTS)
INSERT_ANALYZER_DATA = _insert_statement(RecordKind.ANALYZER_DATA, ("fault",))
INSERT_ANALOG_INPUTS = _insert_statement(RecordKind.ANALOG_INPUTS)

UPSERT_DEVICE_DATA = text("""
    INSERT INTO device_data (device_id, ip_address, rnum, timestamp)
    VALUES (:device_id, :ip_address, :rnum, :timestamp)
    ON CONFLICT (device_id) DO UPDATE SET
        ip_address = EXCLUDED.ip_address,
        rnum = EXCLUDED.rnum,
        timestamp = EXCLUDED.timestamp
""").bindparams(bindparam("timestamp", type_=DateTime(timezone=True)))


class TelemetryStore:
    """Reads and writes telemetry rows through an injected engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, **pool_options) -> "TelemetryStore":
        return cls(create_engine_from_url(database_url, **pool_options))

    async def init_schema(self) -> None:
        """Create the telemetry tables if they do not exist yet"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            logger.info("All database tables initialized")
        except SQLAlchemyError as e:
            logger.error(f"Error initializing database: {e}")
            raise

    async def test_connection(self) -> bool:
        """Test database connectivity"""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert_digital_inputs(self, device_id: str, values: Sequence[Any]) -> None:
        row = self._value_row(RecordKind.DIGITAL_INPUTS, device_id, [bool(v) for v in values], False)
        await self._write(RecordKind.DIGITAL_INPUTS, INSERT_DIGITAL_INPUTS, row)

    async def insert_analyzer_data(self, device_id: str, values: Sequence[Any], fault: str = "") -> None:
        row = self._value_row(RecordKind.ANALYZER_DATA, device_id, [float(v) for v in values], 0.0)
        row["fault"] = fault or ""
        await self._write(RecordKind.ANALYZER_DATA, INSERT_ANALYZER_DATA, row)

    async def insert_analog_inputs(self, device_id: str, values: Sequence[Any]) -> None:
        row = self._value_row(RecordKind.ANALOG_INPUTS, device_id, [float(v) for v in values], 0.0)
        await self._write(RecordKind.ANALOG_INPUTS, INSERT_ANALOG_INPUTS, row)

    async def upsert_device_data(
        self,
        device_id: str,
        rnum: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Create the device's row on first sight, replace it on every later report."""
        await self._write(RecordKind.DEVICE_DATA, UPSERT_DEVICE_DATA, {
            "device_id": device_id,
            "ip_address": ip_address,
            "rnum": rnum,
            "timestamp": datetime.now(timezone.utc),
        })

    def _value_row(self, kind: RecordKind, device_id: str, values: List[Any], fill: Any) -> Dict[str, Any]:
        columns = VALUE_COLUMNS[kind]
        row: Dict[str, Any] = {"device_id": device_id, "timestamp": datetime.now(timezone.utc)}
        row.update(zip(columns, pad_values(values, len(columns), fill)))
        return row

    async def _write(self, kind: RecordKind, statement, params: Dict[str, Any]) -> None:
        logger.debug(f"Inserting into {kind.value}: {params}")
        try:
            async with self.engine.connect() as conn:
                await conn.execute(statement, params)
                await conn.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error inserting data into {kind.value}: {e}")
            raise

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_all(self, kind: RecordKind) -> List[Dict[str, Any]]:
        """All rows of a kind, newest first."""
        table = TABLES[kind]
        query = select(table).order_by(table.c.timestamp.desc(), table.c.record_id.desc())
        rows = await self.fetch_all(query)
        logger.debug(f"Query returned {len(rows)} rows from {kind.value}")
        return rows

    async def get_latest(self, kind: RecordKind, device_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Newest row of a kind, optionally for one device; None when there is none."""
        table = TABLES[kind]
        query = select(table)
        if device_id is not None:
            query = query.where(table.c.device_id == device_id)
        query = query.order_by(table.c.timestamp.desc(), table.c.record_id.desc()).limit(1)
        return await self.fetch_one(query)

    async def fetch_all(self, statement, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(statement, params or {})
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            logger.error(f"Database query failed: {e}")
            raise

    async def fetch_one(self, statement, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all(statement, params)
        return rows[0] if rows else None

    async def close(self) -> None:
        """Close database connection pool"""
        await self.engine.dispose()
        logger.info("Database connection pool closed")
