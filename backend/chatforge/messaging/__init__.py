"""AMQP messaging: topology, broker client, producers and consumers."""
from .broker import MessageBroker, PermanentMessageError
from .topology import Topology, build_topology

__all__ = ["MessageBroker", "PermanentMessageError", "Topology", "build_topology"]
