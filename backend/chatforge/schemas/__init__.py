"""Pydantic schema exports."""
from .events import BrokerEvent, parse_event

__all__ = ["BrokerEvent", "parse_event"]
