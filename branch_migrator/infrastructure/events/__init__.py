# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event infrastructure module for Branch Migrator.

Components:
- EventBus: In-memory pub/sub with pattern matching
- EventTypes: Centralized event type constants

Quick Start:
    from branch_migrator.infrastructure.events import get_event_bus, EventTypes

    event_bus = get_event_bus()
    event_bus.subscribe(EventTypes.Branch.DESCRIPTOR_UPDATED, my_handler)
"""

from branch_migrator.infrastructure.events.bus import (
    EventBus,
    EventData,
    EventHandler,
    EventTypes,
    get_event_bus,
    reset_event_bus,
)

__all__ = [
    "EventBus",
    "EventData",
    "EventHandler",
    "EventTypes",
    "get_event_bus",
    "reset_event_bus",
]
