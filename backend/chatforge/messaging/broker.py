"""AMQP client shared by the chat API, the email worker and the auth producers.

One ``MessageBroker`` is constructed per process with the name of the service
it speaks for. ``connect`` opens a connection with bounded retries, declares
the topology, and applies the channel prefetch. A closed connection triggers
the same bounded loop in the background; consumers registered through
``consume`` are re-attached after every successful reconnect.
"""
from __future__ import annotations

import asyncio
import json
import os
import signal
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from pydantic import ValidationError

from chatforge.config import Settings, settings
from chatforge.errors import BrokerUnavailable
from chatforge.messaging.topology import DLQ_ROUTING_KEY, Topology, build_topology, dlq_name, dlx_name
from chatforge.schemas.events import BrokerEvent, parse_event

logger = structlog.get_logger(__name__)

RETRY_HEADER = "x-retry-count"

EventHandler = Callable[[BrokerEvent, int], Awaitable[None]]
ConnectFactory = Callable[..., Awaitable[Any]]
FatalHandler = Callable[[BrokerUnavailable], None]


class PermanentMessageError(Exception):
    """Raised by a handler when retrying the message can never succeed."""


def mask_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username}:****@{host}" if parts.username else f"****@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def retry_count_from(headers: Optional[Mapping[str, Any]]) -> int:
    if not headers:
        return 0
    try:
        return max(int(headers.get(RETRY_HEADER, 0) or 0), 0)
    except (TypeError, ValueError):
        return 0


def _terminate_process(exc: BrokerUnavailable) -> None:
    logger.critical("Broker unreachable in production; terminating", error=str(exc))
    os.kill(os.getpid(), signal.SIGTERM)


class MessageBroker:
    """Connection, topology and publish/consume for one service."""

    def __init__(
        self,
        service_name: str,
        *,
        config: Settings | None = None,
        topology: Topology | None = None,
        connect_factory: ConnectFactory | None = None,
        fatal_handler: FatalHandler | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service_name = service_name
        self.config = config or settings
        self.topology = topology or build_topology(self.config)
        self.url = self.config.rabbitmq_url
        self.max_retries = self.config.broker_max_retries
        self.retry_delay = self.config.broker_retry_delay_seconds
        self.connect_timeout = self.config.broker_connect_timeout_seconds
        self.prefetch_count = self.config.broker_prefetch_count
        self.consumer_max_retries = self.config.consumer_max_retries

        self._connect_factory = connect_factory or aio_pika.connect
        self.fatal_handler = fatal_handler or _terminate_process
        self._sleep = sleep

        self._connection: Any = None
        self._channel: Any = None
        self._exchanges: Dict[str, Any] = {}
        self._queues: Dict[str, Any] = {}
        self._consumers: List[Tuple[str, EventHandler, bool]] = []
        self._connected = False
        self._closing = False
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Connect with up to ``max_retries`` attempts; raises ``BrokerUnavailable``."""
        async with self._lock:
            if self._connected:
                return
            self._closing = False
            last_error: Optional[BaseException] = None
            for attempt in range(1, self.max_retries + 1):
                try:
                    await self._open()
                except Exception as exc:
                    last_error = exc
                    logger.error(
                        "Broker connection failed",
                        attempt=attempt,
                        max_retries=self.max_retries,
                        error=str(exc),
                    )
                    await self._discard_connection()
                    if attempt < self.max_retries:
                        await self._sleep(self.retry_delay)
                    continue

                self._connected = True
                logger.info(
                    "Broker connected",
                    url=mask_url(self.url),
                    service=self.service_name,
                    prefetch=self.prefetch_count,
                )
                for queue_name, handler, no_ack in self._consumers:
                    await self._start_consumer(queue_name, handler, no_ack)
                return

            raise BrokerUnavailable(f"Broker unreachable after {self.max_retries} attempts: {last_error}")

    async def _open(self) -> None:
        self._connection = await self._connect_factory(self.url, timeout=self.connect_timeout)
        self._connection.close_callbacks.add(self._on_connection_closed)
        self._channel = await self._connection.channel(publisher_confirms=True)
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        await self._declare_topology()

    async def _declare_topology(self) -> None:
        """Assert exchanges, the service DLQ and its queues; safe to repeat."""
        self._exchanges = {}
        self._queues = {}

        for exchange_name in self.topology.exchanges.values():
            self._exchanges[exchange_name] = await self._channel.declare_exchange(
                exchange_name, ExchangeType.TOPIC, durable=True
            )

        dead_letter_exchange = dlx_name(self.service_name)
        dlx = await self._channel.declare_exchange(dead_letter_exchange, ExchangeType.DIRECT, durable=True)
        self._exchanges[dead_letter_exchange] = dlx
        dlq = await self._channel.declare_queue(dlq_name(self.service_name), durable=True)
        await dlq.bind(dlx, routing_key=DLQ_ROUTING_KEY)
        self._queues[dlq.name] = dlq

        for spec in self.topology.queues_for(self.service_name):
            queue = await self._channel.declare_queue(
                spec.name,
                durable=True,
                arguments=spec.arguments(self.topology.message_ttl_ms),
            )
            await queue.bind(self._exchanges[spec.exchange], routing_key=spec.routing_key)
            self._queues[spec.name] = queue

        logger.info(
            "Broker topology declared",
            service=self.service_name,
            exchanges=sorted(self._exchanges),
            queues=sorted(self._queues),
        )

    def _on_connection_closed(self, sender: Any = None, exc: Optional[BaseException] = None) -> None:
        self._connected = False
        if self._closing:
            return
        logger.warning("Broker connection closed; reconnecting", error=str(exc) if exc else None)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except BrokerUnavailable as exc:
            if self.config.is_production:
                self.fatal_handler(exc)
            else:
                logger.error("Broker reconnect exhausted; running without broker", error=str(exc))

    async def _discard_connection(self) -> None:
        connection, self._connection, self._channel = self._connection, None, None
        if connection is None:
            return
        connection.close_callbacks.discard(self._on_connection_closed)
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Ignoring error while discarding connection", error=str(exc))

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("Broker channel close failed", error=str(exc))
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as exc:
                logger.warning("Broker connection close failed", error=str(exc))
        logger.info("Broker disconnected", service=self.service_name)

    async def health_check(self) -> bool:
        if not self._connected or self._connection is None or self._channel is None:
            return False
        return not (self._connection.is_closed or self._channel.is_closed)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(
        self,
        routing_key: str,
        payload: Any,
        *,
        event_id: str,
        event_type: str,
        persistent: bool = True,
        priority: int = 0,
        target_exchange: Optional[str] = None,
    ) -> bool:
        """Wrap ``payload`` in the event envelope and publish it.

        Returns ``True`` once the broker confirms the publish. That is not
        proof a consumer processed it: delivery is at-least-once.
        """
        exchange_name = target_exchange or self.topology.exchanges.get(self.service_name)
        exchange = self._exchanges.get(exchange_name) if exchange_name else None
        if not self._connected or exchange is None:
            logger.warning(
                "Publish skipped; broker not ready",
                routing_key=routing_key,
                exchange=exchange_name,
                event_id=event_id,
            )
            return False

        data = payload.to_wire() if hasattr(payload, "to_wire") else payload
        envelope = {
            "eventId": event_id,
            "eventType": event_type,
            "timestamp": int(time.time() * 1000),
            "data": data,
        }
        message = Message(
            body=json.dumps(envelope, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            priority=priority,
            message_id=event_id,
            timestamp=datetime.now(UTC),
            headers={"eventType": event_type, "source": self.service_name, RETRY_HEADER: 0},
        )
        try:
            await exchange.publish(message, routing_key=routing_key)
        except Exception as exc:
            logger.error(
                "Publish failed",
                routing_key=routing_key,
                exchange=exchange_name,
                event_id=event_id,
                error=str(exc),
            )
            return False

        logger.info("Event published", routing_key=routing_key, exchange=exchange_name, event_id=event_id)
        return True

    async def publish_to_dlq(
        self,
        original: Any,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Divert an unprocessable message to this service's dead-letter queue."""
        dlx = self._exchanges.get(dlx_name(self.service_name))
        if not self._connected or dlx is None:
            logger.error("DLQ publish skipped; broker not ready", reason=reason)
            return False

        body = {
            "originalMessage": original,
            "reason": reason,
            "timestamp": datetime.now(UTC).isoformat(),
            "service": self.service_name,
            "metadata": metadata or {},
        }
        message = Message(
            body=json.dumps(body, default=str).encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            headers={"x-dlq-reason": reason, "source": self.service_name},
        )
        try:
            await dlx.publish(message, routing_key=DLQ_ROUTING_KEY)
        except Exception as exc:
            logger.error("DLQ publish failed", reason=reason, error=str(exc))
            return False
        logger.warning("Message sent to DLQ", reason=reason, metadata=metadata or {})
        return True

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------
    async def consume(self, queue_name: str, handler: EventHandler, *, no_ack: bool = False) -> str:
        """Attach ``handler`` to ``queue_name``; returns the consumer tag.

        Delivery policy for ``no_ack=False``:

        * handler returns: ack.
        * handler raises ``PermanentMessageError``, or the body is not a
          valid envelope: publish to the DLQ, then ack.
        * handler raises anything else while ``retry_count`` is below
          ``CONSUMER_MAX_RETRIES``: re-enqueue the unchanged envelope onto
          the same queue with ``x-retry-count`` incremented, then ack. If the
          re-enqueue fails, nack with ``requeue=True``.
        * retries exhausted: publish to the DLQ with the last error, then
          ack. If that publish fails, nack with ``requeue=False`` so the
          queue's dead-letter arguments take over.

        The queue TTL only bounds messages nobody consumes. With
        ``no_ack=True`` the broker settles on delivery and failures are
        only logged.
        """
        consumer_tag = await self._start_consumer(queue_name, handler, no_ack)
        registration = (queue_name, handler, no_ack)
        if registration not in self._consumers:
            self._consumers.append(registration)
        return consumer_tag

    async def _start_consumer(self, queue_name: str, handler: EventHandler, no_ack: bool) -> str:
        queue = self._queues.get(queue_name)
        if queue is None:
            raise BrokerUnavailable(f"Queue '{queue_name}' is not declared for service '{self.service_name}'")

        async def on_message(message: Any) -> None:
            await self._dispatch(queue_name, handler, no_ack, message)

        consumer_tag = await queue.consume(on_message, no_ack=no_ack)
        logger.info("Consumer started", queue=queue_name, no_ack=no_ack)
        return consumer_tag

    async def _dispatch(self, queue_name: str, handler: EventHandler, no_ack: bool, message: Any) -> None:
        retry_count = retry_count_from(message.headers)
        raw_body = message.body.decode("utf-8", errors="replace")
        try:
            envelope = json.loads(raw_body)
            event = parse_event(envelope)
        except (ValueError, ValidationError) as exc:
            logger.error("Undecodable message", queue=queue_name, error=str(exc))
            if not no_ack:
                await self._dead_letter(message, raw_body, "invalid_envelope", queue_name, retry_count, exc)
            return

        try:
            await handler(event, retry_count)
        except PermanentMessageError as exc:
            logger.error("Permanent handler failure", queue=queue_name, event_id=event.event_id, error=str(exc))
            if not no_ack:
                await self._dead_letter(message, envelope, "permanent_failure", queue_name, retry_count, exc)
            return
        except Exception as exc:
            logger.warning(
                "Handler failed",
                queue=queue_name,
                event_id=event.event_id,
                retry_count=retry_count,
                error=str(exc),
            )
            if no_ack:
                return
            if retry_count < self.consumer_max_retries:
                if await self._requeue(queue_name, message, retry_count + 1):
                    await message.ack()
                else:
                    await message.nack(requeue=True)
                return
            await self._dead_letter(message, envelope, "max_retries_exceeded", queue_name, retry_count, exc)
            return

        if not no_ack:
            await message.ack()

    async def _requeue(self, queue_name: str, message: Any, next_retry: int) -> bool:
        if not self._connected or self._channel is None:
            return False
        headers = dict(message.headers or {})
        headers[RETRY_HEADER] = next_retry
        retry = Message(
            body=message.body,
            content_type=message.content_type or "application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            priority=message.priority or 0,
            message_id=message.message_id,
            headers=headers,
        )
        try:
            await self._channel.default_exchange.publish(retry, routing_key=queue_name)
        except Exception as exc:
            logger.error("Retry publish failed", queue=queue_name, error=str(exc))
            return False
        logger.info("Message scheduled for retry", queue=queue_name, retry_count=next_retry)
        return True

    async def _dead_letter(
        self,
        message: Any,
        original: Any,
        reason: str,
        queue_name: str,
        retry_count: int,
        error: BaseException,
    ) -> None:
        metadata = {"queue": queue_name, "retryCount": retry_count, "error": str(error)}
        if await self.publish_to_dlq(original, reason, metadata):
            await message.ack()
        else:
            await message.nack(requeue=False)
