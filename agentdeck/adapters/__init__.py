"""Adapters package - channels between providers, the manager and observers.

Contains the provider-to-manager event bus, the observer fan-out and
the typed events carried by both.
"""
from __future__ import annotations

__all__ = [
    "BroadcastFanout",
    "EventBus",
]

from agentdeck.adapters.broadcast import BroadcastFanout
from agentdeck.adapters.event_bus import EventBus
