"""Tests for the email worker process loop."""
from __future__ import annotations

import asyncio

import pytest

from chatforge.config import settings
from chatforge.errors import BrokerUnavailable
from chatforge.messaging.broker import MessageBroker
from chatforge.messaging.consumers import LoggingEmailDispatcher
from chatforge.messaging.producers import AccountEventProducer
from chatforge.messaging.topology import AUTH_SERVICE, EMAIL_SERVICE
from chatforge.schemas.events import UserCreatedData
from chatforge.worker import run_worker


async def _wait_for_consumers(amqp_server, queue_name: str) -> None:
    for _ in range(100):
        queue = amqp_server.queues.get(queue_name)
        if queue is not None and queue.consumers:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"no consumer attached to {queue_name}")


@pytest.mark.anyio
async def test_worker_processes_events_until_stopped(amqp_server, no_sleep):
    auth = MessageBroker(AUTH_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    await auth.connect()
    await AccountEventProducer(auth).user_created(UserCreatedData(user_id="u1", email="ann@example.com"))

    broker = MessageBroker(EMAIL_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    stop = asyncio.Event()
    worker = asyncio.create_task(run_worker(broker=broker, dispatcher=LoggingEmailDispatcher(), stop_event=stop))

    await _wait_for_consumers(amqp_server, "auth.user.created")
    delivered = await amqp_server.drain("auth.user.created")
    stop.set()

    assert await worker == 0
    assert [m.outcome for m in delivered] == ["ack"]
    assert broker.is_connected is False
    assert len(amqp_server.queues["auth.email.response"].pending) == 1


@pytest.mark.anyio
async def test_worker_exits_non_zero_when_broker_is_lost(amqp_server, no_sleep):
    broker = MessageBroker(EMAIL_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    worker = asyncio.create_task(run_worker(broker=broker))

    await _wait_for_consumers(amqp_server, "auth.user.created")
    broker.fatal_handler(BrokerUnavailable("gone"))

    assert await worker == 1


@pytest.mark.anyio
async def test_worker_fails_fast_in_production(amqp_server, no_sleep):
    amqp_server.refuse_connections = 10
    config = settings.model_copy(update={"environment": "production", "broker_max_retries": 2})
    broker = MessageBroker(EMAIL_SERVICE, config=config, connect_factory=amqp_server.connect, sleep=no_sleep)

    assert await run_worker(broker=broker) == 1
    assert len(amqp_server.connect_calls) == 2
