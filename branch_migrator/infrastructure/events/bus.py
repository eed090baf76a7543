# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""In-memory event bus for Branch Migrator.

This module provides an async event bus for decoupled communication
between the branch registry and its consumers. The registry publishes
``branch.descriptor.updated`` when a branch's connection descriptor
changes; the connection router subscribes to drop its cached handle.

The EventBus supports:
- Exact event type matching (e.g., "branch.descriptor.updated")
- Wildcard pattern matching (e.g., "branch.*")
- Async handlers
- Multiple handlers per event type

Example:
    from branch_migrator.infrastructure.events import get_event_bus, EventTypes

    event_bus = get_event_bus()

    async def on_descriptor_updated(event):
        print(f"Descriptor changed: {event.payload['branch_id']}")

    event_bus.subscribe(EventTypes.Branch.DESCRIPTOR_UPDATED, on_descriptor_updated)

    await event_bus.publish(
        EventTypes.Branch.DESCRIPTOR_UPDATED,
        {"branch_id": "b-001"},
    )
"""

import asyncio
import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import uuid4

from branch_migrator.utils.datetime import utc_now

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[["EventData"], Awaitable[None]]


class EventTypes:
    """All event types in Branch Migrator organized by domain."""

    class Branch:
        """Tenant registry events."""

        DESCRIPTOR_UPDATED = "branch.descriptor.updated"
        DEACTIVATED = "branch.deactivated"

    class Migration:
        """Migration orchestration events."""

        APPLIED = "migration.applied"
        ROLLED_BACK = "migration.rolled_back"
        FAILED = "migration.failed"


@dataclass
class EventData:
    """Container for event data with metadata.

    Attributes:
        event_type: The event type string.
        payload: The event payload data.
        event_id: Unique event identifier.
        timestamp: When the event was published.
        branch_id: Optional branch the event concerns.
    """

    event_type: str
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utc_now)
    branch_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "branch_id": self.branch_id,
        }


class EventBus:
    """In-memory async event bus with pattern matching support.

    Thread-safety: This implementation is designed for single-threaded
    async use. For multi-process deployments every process keeps its own
    bus; cache invalidation there relies on descriptor fingerprints.

    Example:
        bus = EventBus()
        bus.subscribe("branch.descriptor.updated", handler)
        bus.subscribe("branch.*", pattern_handler)
        await bus.publish("branch.descriptor.updated", {"branch_id": "b-001"})
    """

    def __init__(self) -> None:
        """Initialize the event bus."""
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pattern_handlers: dict[str, list[EventHandler]] = {}
        self._event_count = 0
        logger.debug("EventBus initialized")

    @staticmethod
    def _is_pattern(event_type: str) -> bool:
        return "*" in event_type or "?" in event_type

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe a handler to an event type or pattern.

        Args:
            event_type: Event type string or pattern with wildcards.
            handler: Async function to call when event is published.
        """
        registry = self._pattern_handlers if self._is_pattern(event_type) else self._handlers
        registry.setdefault(event_type, []).append(handler)
        logger.debug("Subscribed handler to: %s", event_type)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Unsubscribe a handler from an event type or pattern.

        Args:
            event_type: Event type string or pattern.
            handler: The handler function to remove.

        Returns:
            True if handler was found and removed, False otherwise.
        """
        registry = self._pattern_handlers if self._is_pattern(event_type) else self._handlers
        handlers = registry.get(event_type)
        if not handlers:
            return False
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del registry[event_type]
        return True

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        branch_id: str | None = None,
    ) -> EventData:
        """Publish an event to all matching subscribers.

        Handlers are called concurrently using asyncio.gather.
        Errors in individual handlers are logged but don't stop
        other handlers from executing.

        Args:
            event_type: The event type string.
            payload: Event data dictionary.
            branch_id: Optional branch the event concerns.

        Returns:
            EventData object with event metadata.
        """
        event = EventData(event_type=event_type, payload=payload, branch_id=branch_id)
        self._event_count += 1

        handlers_to_call: list[EventHandler] = list(self._handlers.get(event_type, []))
        for pattern, pattern_handlers in self._pattern_handlers.items():
            if fnmatch.fnmatch(event_type, pattern):
                handlers_to_call.extend(pattern_handlers)

        if not handlers_to_call:
            logger.debug("No handlers for event: %s (branch: %s)", event_type, branch_id)
            return event

        logger.debug(
            "Publishing event %s to %d handlers (branch: %s)",
            event_type,
            len(handlers_to_call),
            branch_id,
        )

        async def safe_call(handler: EventHandler) -> None:
            """Call handler with error handling."""
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Handler error for event %s: %s",
                    event_type,
                    str(e),
                    exc_info=True,
                )

        await asyncio.gather(*[safe_call(handler) for handler in handlers_to_call])

        return event

    def clear(self) -> None:
        """Remove all subscriptions."""
        self._handlers.clear()
        self._pattern_handlers.clear()
        logger.debug("EventBus cleared all subscriptions")

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics.

        Returns:
            Dictionary with subscription and event counts.
        """
        exact_count = sum(len(h) for h in self._handlers.values())
        pattern_count = sum(len(h) for h in self._pattern_handlers.values())

        return {
            "exact_subscriptions": len(self._handlers),
            "pattern_subscriptions": len(self._pattern_handlers),
            "total_handlers": exact_count + pattern_count,
            "events_published": self._event_count,
        }


# Singleton instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the singleton event bus instance.

    Returns:
        EventBus instance.
    """
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the event bus singleton.

    Useful for testing to ensure clean state between tests.
    """
    global _event_bus
    if _event_bus is not None:
        _event_bus.clear()
    _event_bus = None
