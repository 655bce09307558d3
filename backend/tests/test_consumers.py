"""Tests for the account event producers and the email consumers."""
from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from chatforge.config import settings
from chatforge.messaging.broker import MessageBroker, PermanentMessageError
from chatforge.messaging.consumers import (
    AccountEmailConsumer,
    EmailDeliveryError,
    EmailResponseConsumer,
    email_type_for,
    is_retriable_error,
)
from chatforge.messaging.producers import AccountEventProducer, EmailResponseProducer
from chatforge.messaging.topology import AUTH_SERVICE, EMAIL_SERVICE
from chatforge.schemas.events import (
    EmailResponseData,
    OtpGeneratedData,
    OtpGeneratedEvent,
    PasswordChangedData,
    UserCreatedData,
    UserDeactivatedData,
    UserDeactivatedEvent,
    parse_event,
)


class _RecordingDispatcher:
    provider = "recording"

    def __init__(self, failures: List[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.sent: List[Dict[str, Any]] = []

    async def send(self, recipient: str, email_type: str, context: Dict[str, Any]) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({"recipient": recipient, "email_type": email_type, "context": context})


async def _wire(amqp_server, no_sleep, dispatcher):
    config = settings.model_copy(update={"consumer_max_retries": 2})
    auth = MessageBroker(AUTH_SERVICE, config=config, connect_factory=amqp_server.connect, sleep=no_sleep)
    email = MessageBroker(EMAIL_SERVICE, config=config, connect_factory=amqp_server.connect, sleep=no_sleep)
    await auth.connect()
    await email.connect()

    consumer = AccountEmailConsumer(email, dispatcher)
    await consumer.start()
    return AccountEventProducer(auth), consumer


def _responses(amqp_server) -> List[Dict[str, Any]]:
    return [json.loads(message.body) for message in amqp_server.queues["auth.email.response"].pending]


@pytest.mark.anyio
async def test_user_created_sends_welcome_email_and_reports_success(amqp_server, no_sleep):
    dispatcher = _RecordingDispatcher()
    producer, _ = await _wire(amqp_server, no_sleep, dispatcher)

    event_id = await producer.user_created(UserCreatedData(user_id="u1", email="ann@example.com"))
    await amqp_server.drain("auth.user.created")

    assert event_id is not None
    assert dispatcher.sent == [
        {"recipient": "ann@example.com", "email_type": "welcome", "context": {"userId": "u1", "email": "ann@example.com"}}
    ]
    [response] = _responses(amqp_server)
    assert response["eventId"] == event_id
    assert response["eventType"] == "email.response.welcome"
    assert response["data"]["status"] == "sent"
    assert response["data"]["provider"] == "recording"


@pytest.mark.anyio
async def test_otp_events_carry_priority(amqp_server, no_sleep):
    producer, _ = await _wire(amqp_server, no_sleep, _RecordingDispatcher())

    await producer.otp_generated(
        OtpGeneratedData(user_id="u1", email="ann@example.com", otp_id="o1", type="email_verification")
    )

    message = amqp_server.queues["auth.otp.generated"].pending[0]
    assert message.priority == 8


@pytest.mark.anyio
async def test_duplicate_delivery_sends_one_email(amqp_server, no_sleep):
    dispatcher = _RecordingDispatcher()
    producer, consumer = await _wire(amqp_server, no_sleep, dispatcher)

    await producer.password_changed(
        PasswordChangedData(user_id="u1", email="ann@example.com", changed_at="2024-03-10T12:00:00Z")
    )
    queue = amqp_server.queues["auth.password.changed"]
    # at-least-once delivery: the same message arrives twice
    queue.pending.append(queue.pending[0])
    delivered = await amqp_server.drain("auth.password.changed")

    assert len(delivered) == 2
    assert len(dispatcher.sent) == 1
    assert [m.outcome for m in delivered] == ["ack", "ack"]


@pytest.mark.anyio
async def test_transient_failure_is_retried_and_reported(amqp_server, no_sleep):
    dispatcher = _RecordingDispatcher(failures=[EmailDeliveryError("connect ETIMEDOUT")])
    producer, _ = await _wire(amqp_server, no_sleep, dispatcher)

    event_id = await producer.user_created(UserCreatedData(user_id="u1", email="ann@example.com"))
    delivered = await amqp_server.drain("auth.user.created")

    assert len(delivered) == 2
    assert len(dispatcher.sent) == 1
    statuses = [response["data"]["status"] for response in _responses(amqp_server)]
    assert statuses == ["sent"]
    assert {response["eventId"] for response in _responses(amqp_server)} == {event_id}


@pytest.mark.anyio
async def test_exhausted_retries_report_one_failure(amqp_server, no_sleep):
    timeouts = [EmailDeliveryError("connect ETIMEDOUT") for _ in range(3)]
    dispatcher = _RecordingDispatcher(failures=timeouts)
    producer, _ = await _wire(amqp_server, no_sleep, dispatcher)

    event_id = await producer.user_created(UserCreatedData(user_id="u1", email="ann@example.com"))
    delivered = await amqp_server.drain("auth.user.created")

    assert len(delivered) == 3
    assert dispatcher.sent == []
    dead = json.loads(amqp_server.queues["email.dlq"].pending[0].body)
    assert dead["reason"] == "max_retries_exceeded"
    [response] = _responses(amqp_server)
    assert response["eventId"] == event_id
    assert response["data"]["status"] == "failed"


@pytest.mark.anyio
async def test_permanent_failure_is_dead_lettered(amqp_server, no_sleep):
    dispatcher = _RecordingDispatcher(failures=[EmailDeliveryError("mailbox does not exist", code="550")])
    producer, _ = await _wire(amqp_server, no_sleep, dispatcher)

    await producer.user_created(UserCreatedData(user_id="u1", email="ghost@example.com"))
    delivered = await amqp_server.drain("auth.user.created")

    assert len(delivered) == 1
    assert dispatcher.sent == []
    dead = json.loads(amqp_server.queues["email.dlq"].pending[0].body)
    assert dead["reason"] == "permanent_failure"
    assert [response["data"]["status"] for response in _responses(amqp_server)] == ["failed"]


@pytest.mark.anyio
async def test_response_consumer_invokes_hook(amqp_server, no_sleep):
    auth = MessageBroker(AUTH_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    email = MessageBroker(EMAIL_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    await auth.connect()
    await email.connect()
    received: List[EmailResponseData] = []

    async def on_response(response: EmailResponseData) -> None:
        received.append(response)

    await EmailResponseConsumer(auth, on_response=on_response).start()
    await EmailResponseProducer(email).sent("evt-7", "u1", "ann@example.com", "otp", "smtp")
    delivered = await amqp_server.drain("auth.email.response")

    assert [m.outcome for m in delivered] == ["ack"]
    assert received[0].event_id == "evt-7"
    assert received[0].status == "sent"


@pytest.mark.anyio
async def test_producer_returns_none_when_broker_is_down(amqp_server, no_sleep):
    auth = MessageBroker(AUTH_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)

    event_id = await AccountEventProducer(auth).user_created(UserCreatedData(user_id="u1", email="a@b.co"))

    assert event_id is None


def test_email_type_mapping():
    reset_otp = parse_event(
        {
            "eventId": "evt-1",
            "eventType": "otp.generated",
            "timestamp": 1,
            "data": {"userId": "u1", "email": "a@b.co", "otpId": "o1", "type": "password_reset"},
        }
    )

    assert isinstance(reset_otp, OtpGeneratedEvent)
    assert email_type_for(reset_otp) == "password_reset"


@pytest.mark.parametrize(
    "error, retriable",
    [
        (TimeoutError("timed out"), True),
        (ConnectionResetError("reset"), True),
        (EmailDeliveryError("try later", code="421"), True),
        (EmailDeliveryError("RATE_LIMIT exceeded"), True),
        (EmailDeliveryError("no such user", code="550"), False),
        (ValueError("bad template"), False),
    ],
)
def test_is_retriable_error(error, retriable):
    assert is_retriable_error(error) is retriable


@pytest.mark.anyio
async def test_email_consumer_rejects_response_events(amqp_server, no_sleep):
    email = MessageBroker(EMAIL_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    consumer = AccountEmailConsumer(email, _RecordingDispatcher())
    event = parse_event(
        {
            "eventId": "evt-1",
            "eventType": "email.response.otp",
            "timestamp": 1,
            "data": {"eventId": "evt-1", "userId": "u1", "email": "a@b.co", "emailType": "otp", "status": "sent"},
        }
    )

    with pytest.raises(PermanentMessageError):
        await consumer.handle(event, 0)


@pytest.mark.anyio
async def test_deactivation_event_reaches_its_queue_once(amqp_server, no_sleep):
    auth = MessageBroker(AUTH_SERVICE, connect_factory=amqp_server.connect, sleep=no_sleep)
    await auth.connect()

    await auth.publish(
        "user.deactivated",
        UserDeactivatedData(user_id="u1", email="ann@example.com"),
        event_id="evt-42",
        event_type="user.deactivated",
    )

    [message] = amqp_server.queues["auth.user.deactivated"].pending
    event = parse_event(json.loads(message.body))
    assert isinstance(event, UserDeactivatedEvent)
    assert event.event_id == "evt-42"
    assert event.data.email == "ann@example.com"
    assert amqp_server.queues["auth.user.created"].pending == []
