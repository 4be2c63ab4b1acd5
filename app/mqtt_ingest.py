#!/usr/bin/env python3
"""
Field Telemetry Ingest - MQTT Ingest Service

Receives telemetry from field devices via MQTT and stores it in the
relational database.

Features:
- Subscribes to one topic pattern per record kind
- Routes, validates and stores each message before taking the next one
- Reconnects to the broker after a fixed delay when the connection drops
- Logs ingest statistics periodically
- Graceful shutdown on SIGTERM/SIGINT

Device MQTT Topics (prefix configurable, default CDC):
- CDC/{device}/DIGITAL_INPUTS  - 9 digital input channels
- CDC/{device}/ANALYSER_DATA   - power analyzer readings
- CDC/{device}/ANALOG_INPUT    - 2 analog input channels
- CDC/{device}/DEVICE_DATA     - heartbeat counter and IP address
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import aiomqtt

from ingest_dispatcher import IngestDispatcher
from settings import (
    DATABASE_URL, LOG_FORMAT, LOG_LEVEL, MQTT_BROKER_HOST, MQTT_BROKER_PORT,
    MQTT_CLIENT_ID, MQTT_PASSWORD, MQTT_RECONNECT_INTERVAL, MQTT_USERNAME,
    STATS_INTERVAL_SECONDS, missing_settings, topic_patterns,
)
from telemetry_store import TelemetryStore
from topic_router import TopicRouter

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


class MQTTIngestService:
    """MQTT subscriber service for field telemetry ingest"""

    def __init__(
        self,
        dispatcher: IngestDispatcher,
        router: TopicRouter,
        hostname: str = MQTT_BROKER_HOST,
        port: int = MQTT_BROKER_PORT,
        username: str = MQTT_USERNAME,
        password: str = MQTT_PASSWORD,
        client_id: str = MQTT_CLIENT_ID,
        reconnect_interval: float = MQTT_RECONNECT_INTERVAL,
    ):
        self.dispatcher = dispatcher
        self.router = router
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.reconnect_interval = reconnect_interval
        self.shutdown_event = asyncio.Event()
        self.connected = False

    async def start(self):
        """Start the MQTT ingest service and run until shutdown is requested"""
        logger.info("Starting field telemetry MQTT ingest service")
        logger.info(f"MQTT Broker: {self.hostname}:{self.port}")
        logger.debug(f"MQTT topics: {', '.join(self.router.subscriptions)}")

        listener = asyncio.create_task(self._connect_and_subscribe())
        stopper = asyncio.create_task(self.shutdown_event.wait())
        try:
            await asyncio.wait({listener, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (listener, stopper):
                task.cancel()
            await asyncio.gather(listener, stopper, return_exceptions=True)

        logger.info("MQTT ingest service stopped")

    def _client(self) -> aiomqtt.Client:
        connect_kwargs = {
            'hostname': self.hostname,
            'port': self.port,
            'identifier': self.client_id,
            'clean_session': True,
            'timeout': 4,
        }
        if self.username:
            connect_kwargs['username'] = self.username
        if self.password:
            connect_kwargs['password'] = self.password
        return aiomqtt.Client(**connect_kwargs)

    async def _connect_and_subscribe(self):
        """Connect to MQTT broker, subscribe and process messages, reconnecting on failure"""
        while not self.shutdown_event.is_set():
            try:
                logger.info(f"Connecting to MQTT broker at {self.hostname}:{self.port}...")

                async with self._client() as client:
                    self.connected = True
                    logger.info("Connected to MQTT broker")

                    for topic in self.router.subscriptions:
                        await client.subscribe(topic)
                        logger.info(f"Subscribed to topic: {topic}")

                    stats_task = asyncio.create_task(self._log_stats())
                    try:
                        # One message at a time: each is stored before the next is read
                        async for message in client.messages:
                            if self.shutdown_event.is_set():
                                break
                            await self._handle_message(message)
                    finally:
                        stats_task.cancel()
                        try:
                            await stats_task
                        except asyncio.CancelledError:
                            pass

            except aiomqtt.MqttError as e:
                if self.shutdown_event.is_set():
                    break
                logger.error(f"MQTT connection error: {e}")
                logger.info(f"Reconnecting in {self.reconnect_interval} seconds...")
                await asyncio.sleep(self.reconnect_interval)

            except Exception as e:
                if self.shutdown_event.is_set():
                    break
                logger.error(f"Unexpected error: {e}", exc_info=True)
                await asyncio.sleep(self.reconnect_interval)

            finally:
                self.connected = False

    async def _handle_message(self, message):
        """Hand one incoming MQTT message to the dispatcher"""
        topic = str(message.topic)
        payload = message.payload
        if payload is None:
            payload = b""
        elif not isinstance(payload, (bytes, bytearray, str)):
            payload = str(payload)
        await self.dispatcher.handle_message(topic, payload)

    async def _log_stats(self):
        """Periodically log statistics"""
        while not self.shutdown_event.is_set():
            await asyncio.sleep(STATS_INTERVAL_SECONDS)
            stats = self.dispatcher.stats
            logger.info(
                f"MQTT Ingest Stats: "
                f"Received: {stats['received']}, "
                f"Digital inputs: {stats['digital_inputs']}, "
                f"Analyzer: {stats['analyzer_data']}, "
                f"Analog inputs: {stats['analog_inputs']}, "
                f"Device data: {stats['device_data']}, "
                f"Invalid: {stats['invalid']}, "
                f"Unroutable: {stats['unroutable']}, "
                f"Storage errors: {stats['storage_errors']}"
            )

    def request_shutdown(self, signum: Optional[int] = None):
        """Ask the service to stop; safe to call from a signal handler"""
        if signum is not None:
            logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        self.shutdown_event.set()


async def run() -> int:
    """Build the pipeline, run the service and release resources on exit"""
    missing = missing_settings()
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return 1

    logger.info("Initializing database connection...")
    store = TelemetryStore.from_url(DATABASE_URL)
    try:
        if not await store.test_connection():
            logger.error("Database connection test failed. Exiting.")
            return 1
        await store.init_schema()

        router = TopicRouter(topic_patterns())
        service = MQTTIngestService(IngestDispatcher(router, store), router)

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, service.request_shutdown, signum)

        await service.start()
        return 0
    finally:
        await store.close()


def main():
    """Main entry point"""
    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
