"""Exchange and queue catalogue shared by every service that touches the broker.

Each queue is owned by its consumer: the consumer's dead-letter exchange is
written into the queue arguments, so a producer that also declares the queue
asserts byte-identical arguments and the declaration never conflicts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from chatforge.config import Settings, settings

AUTH_SERVICE = "auth"
EMAIL_SERVICE = "email"
DLQ_ROUTING_KEY = "failed"
MAX_PRIORITY = 10


def dlx_name(service: str) -> str:
    return f"{service}.exchange.dlx"


def dlq_name(service: str) -> str:
    return f"{service}.dlq"


@dataclass(frozen=True)
class QueueSpec:
    name: str
    exchange: str
    routing_key: str
    producer: str
    consumer: str

    def arguments(self, message_ttl_ms: int) -> Dict[str, object]:
        return {
            "x-dead-letter-exchange": dlx_name(self.consumer),
            "x-dead-letter-routing-key": DLQ_ROUTING_KEY,
            "x-message-ttl": message_ttl_ms,
            "x-max-priority": MAX_PRIORITY,
        }


@dataclass(frozen=True)
class Topology:
    """Topic exchange per producing service plus the queues bound to them."""

    exchanges: Dict[str, str]
    queues: Tuple[QueueSpec, ...] = field(default_factory=tuple)
    message_ttl_ms: int = 86_400_000

    def exchange_for(self, service: str) -> str:
        return self.exchanges[service]

    def queue(self, name: str) -> QueueSpec:
        for spec in self.queues:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def queues_for(self, service: str) -> Tuple[QueueSpec, ...]:
        """Queues ``service`` declares: those it consumes or produces into."""
        return tuple(spec for spec in self.queues if service in (spec.consumer, spec.producer))

    def consumed_by(self, service: str) -> Tuple[QueueSpec, ...]:
        return tuple(spec for spec in self.queues if spec.consumer == service)


def build_topology(config: Settings | None = None) -> Topology:
    config = config or settings
    auth_exchange = config.auth_exchange
    return Topology(
        exchanges={AUTH_SERVICE: auth_exchange, EMAIL_SERVICE: config.email_exchange},
        queues=(
            QueueSpec("auth.user.created", auth_exchange, "user.created", AUTH_SERVICE, EMAIL_SERVICE),
            QueueSpec("auth.otp.generated", auth_exchange, "otp.generated", AUTH_SERVICE, EMAIL_SERVICE),
            QueueSpec(
                "auth.password.reset.requested",
                auth_exchange,
                "password.reset.requested",
                AUTH_SERVICE,
                EMAIL_SERVICE,
            ),
            QueueSpec("auth.password.changed", auth_exchange, "password.changed", AUTH_SERVICE, EMAIL_SERVICE),
            QueueSpec("auth.user.deactivated", auth_exchange, "user.deactivated", AUTH_SERVICE, EMAIL_SERVICE),
            # responses travel on the auth exchange because their consumer is the auth service
            QueueSpec("auth.email.response", auth_exchange, "email.response.auth", EMAIL_SERVICE, AUTH_SERVICE),
        ),
        message_ttl_ms=config.broker_message_ttl_ms,
    )
