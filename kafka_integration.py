# Kafka Message Bus
# File: kafka_integration.py

"""
Topic-addressed publish/subscribe transport between the engine and drones.

One process-scoped bus owns the producer, the consumer thread and the
pattern -> handler map. Failures stay inside the bus: publishes return False
instead of raising, and malformed or failing messages are logged and dropped
without stopping the poll loop.
"""

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Optional, Tuple

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

from config import DispatchConfig
from messages import ServerStatus, Topics, WireModel

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], None]
MessageId = Tuple[str, int, int]

QOS_FIRE_AND_FORGET = 0
QOS_AT_LEAST_ONCE = 1
QOS_EXACTLY_ONCE = 2


class KafkaMessageBus:
    """Kafka-backed message bus with MQTT-style topic patterns"""

    def __init__(self, config: DispatchConfig,
                 producer_factory: Optional[Callable[[], Any]] = None,
                 consumer_factory: Optional[Callable[[], Any]] = None,
                 metrics=None, dedupe_window: int = 10000):
        """
        Initialize message bus

        Args:
            config: Dispatch configuration (brokers, timeouts)
            producer_factory: Builds the producer (KafkaProducer by default)
            consumer_factory: Builds the consumer (KafkaConsumer by default)
            metrics: Optional MetricsCollector
            dedupe_window: Number of recent message ids remembered
        """
        self.config = config
        self.metrics = metrics
        self._producer_factory = producer_factory or self._create_producer
        self._consumer_factory = consumer_factory or self._create_consumer

        self.handlers: Dict[str, Handler] = {}
        self.producer = None
        self.consumer = None
        self.running = False
        self.consumer_thread = None

        self._seen_ids: deque = deque(maxlen=dedupe_window)
        self._seen_set = set()
        self._seen_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Kafka clients
    # ------------------------------------------------------------------

    def _create_producer(self):
        return KafkaProducer(
            bootstrap_servers=self.config.kafka_bootstrap_servers,
            client_id=self.config.kafka_client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
            key_serializer=lambda k: k.encode('utf-8') if k else None,
            acks='all',
            retries=3,
            max_in_flight_requests_per_connection=1,
            request_timeout_ms=int(self.config.publish_timeout_seconds * 1000),
        )

    def _create_consumer(self):
        return KafkaConsumer(
            bootstrap_servers=self.config.kafka_bootstrap_servers,
            group_id=self.config.kafka_group_id,
            client_id=f"{self.config.kafka_client_id}-consumer",
            auto_offset_reset='latest',
            enable_auto_commit=True,
            auto_commit_interval_ms=5000,
            metadata_max_age_ms=30000,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register_handler(self, pattern: str, handler: Handler):
        """
        Route messages on topics matching pattern to handler

        One handler per pattern; registering again replaces it. Patterns
        registered after start() take effect on the next start().
        """
        self.handlers[pattern] = handler
        logger.info(f"Registered handler for topic pattern: {pattern}")

    def unregister_handler(self, pattern: str):
        self.handlers.pop(pattern, None)

    def start(self):
        """Connect the producer, start consuming and announce the server online"""
        if self.running:
            logger.warning("Message bus already running")
            return

        try:
            self.producer = self._producer_factory()
        except KafkaError as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise
        logger.info(f"Kafka producer connected: {self.config.kafka_bootstrap_servers}")

        self.running = True
        if self.handlers:
            self.consumer_thread = threading.Thread(
                target=self._consume_loop,
                daemon=True,
                name="message-bus-consumer"
            )
            self.consumer_thread.start()

        self.publish(Topics.SERVER_STATUS, ServerStatus(status="online"), qos=QOS_AT_LEAST_ONCE)
        logger.info("Message bus started")

    def stop(self):
        """Announce the server offline, stop consuming and close clients"""
        if not self.running:
            return
        logger.info("Stopping message bus...")

        self.publish(Topics.SERVER_STATUS, ServerStatus(status="offline"), qos=QOS_AT_LEAST_ONCE)
        self.running = False
        if self.consumer_thread:
            self.consumer_thread.join(timeout=5)
            self.consumer_thread = None

        if self.producer is not None:
            try:
                self.producer.flush(timeout=self.config.publish_timeout_seconds)
                self.producer.close()
            except KafkaError as e:
                logger.error(f"Error closing producer: {e}")
            self.producer = None
        logger.info("Message bus stopped")

    def is_connected(self) -> bool:
        return self.running and self.producer is not None

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def _consume_loop(self):
        pattern = '|'.join(Topics.to_regex(p) for p in self.handlers)
        try:
            self.consumer = self._consumer_factory()
            self.consumer.subscribe(pattern=pattern)
        except KafkaError as e:
            logger.error(f"Failed to start Kafka consumer: {e}")
            return
        logger.info(f"Consuming topics matching {pattern}")

        while self.running:
            try:
                batches = self.consumer.poll(timeout_ms=self.config.poll_timeout_ms, max_records=100)
            except KafkaError as e:
                logger.error(f"Kafka poll error: {e}")
                time.sleep(1)
                continue

            for records in batches.values():
                for record in records:
                    self.dispatch(
                        record.topic, record.value,
                        message_id=(record.topic, record.partition, record.offset)
                    )

        try:
            self.consumer.close()
        except KafkaError as e:
            logger.error(f"Error closing consumer: {e}")
        self.consumer = None

    def dispatch(self, topic: str, raw, message_id: Optional[MessageId] = None) -> int:
        """
        Decode one message and run the handlers whose pattern matches

        Args:
            topic: Topic the message arrived on
            raw: JSON payload (bytes or str)
            message_id: (topic, partition, offset) used to drop redeliveries

        Returns:
            Number of handlers that completed
        """
        if message_id is not None and self._is_duplicate(message_id):
            logger.debug(f"Duplicate delivery dropped: {message_id}")
            self._count('messages_duplicate')
            return 0

        try:
            text = raw.decode('utf-8') if isinstance(raw, (bytes, bytearray)) else raw
            payload = json.loads(text)
        except (UnicodeDecodeError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed message on {topic}: {e}")
            self._count('messages_dropped')
            return 0

        if not isinstance(payload, dict):
            logger.warning(f"Dropping non-object payload on {topic}")
            self._count('messages_dropped')
            return 0

        logger.debug(f"Received message on {topic}")
        completed = 0
        for pattern, handler in list(self.handlers.items()):
            if not Topics.matches(topic, pattern):
                continue
            try:
                handler(topic, payload)
                completed += 1
            except Exception as e:
                logger.error(f"Handler error for {topic}: {e}")
                self._count('handler_errors')
        return completed

    def _is_duplicate(self, message_id: MessageId) -> bool:
        with self._seen_lock:
            if message_id in self._seen_set:
                return True
            if len(self._seen_ids) == self._seen_ids.maxlen:
                self._seen_set.discard(self._seen_ids[0])
            self._seen_ids.append(message_id)
            self._seen_set.add(message_id)
            return False

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, topic: str, payload, qos: int = QOS_AT_LEAST_ONCE,
                key: Optional[str] = None) -> bool:
        """
        Publish a payload

        Args:
            topic: Destination topic
            payload: dict or wire model
            qos: 0 = fire and forget, 1+ = wait for broker acknowledgement
            key: Optional partition key

        Returns:
            True if the message was handed off (and acknowledged for qos >= 1)
        """
        if self.producer is None:
            logger.warning(f"Cannot publish to {topic} - message bus not connected")
            return False

        if isinstance(payload, WireModel):
            payload = payload.to_wire()

        started = time.time()
        try:
            future = self.producer.send(topic, value=payload, key=key)
            if qos >= QOS_AT_LEAST_ONCE:
                future.get(timeout=self.config.publish_timeout_seconds)
        except KafkaError as e:
            logger.error(f"Failed to publish to {topic}: {e}")
            self._count('publish_failures')
            return False

        logger.debug(f"Published to {topic}")
        self._count('messages_published')
        if self.metrics is not None:
            self.metrics.record_histogram('publish_latency_ms', (time.time() - started) * 1000)
        return True

    def _count(self, name: str):
        if self.metrics is not None:
            self.metrics.record_counter(name)
