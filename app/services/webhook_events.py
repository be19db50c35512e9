"""Webhook event catalog — the closed set of events tenants can subscribe to."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

TEST_EVENT = "test.ping"

# Single source for names, descriptions and categories.
_CATALOG: dict[str, dict[str, str]] = {
    "pets": {
        "pet.created": "A new pet was registered",
        "pet.updated": "A pet's information was updated",
        "pet.deleted": "A pet was removed",
    },
    "appointments": {
        "appointment.created": "A new appointment was scheduled",
        "appointment.updated": "An appointment was modified",
        "appointment.cancelled": "An appointment was cancelled",
    },
    "inventory": {
        "inventory.low_stock": "An inventory item fell below its minimum stock",
        "inventory.transfer_completed": "An inventory transfer between locations was completed",
    },
    "sales": {
        "sale.completed": "A sale was completed",
    },
}


class WebhookEvent(str, Enum):
    PET_CREATED = "pet.created"
    PET_UPDATED = "pet.updated"
    PET_DELETED = "pet.deleted"
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    INVENTORY_LOW_STOCK = "inventory.low_stock"
    INVENTORY_TRANSFER_COMPLETED = "inventory.transfer_completed"
    SALE_COMPLETED = "sale.completed"

    @property
    def description(self) -> str:
        return EVENT_DESCRIPTIONS[self.value]

    @property
    def category(self) -> str:
        return _EVENT_CATEGORY[self.value]


EVENT_DESCRIPTIONS: dict[str, str] = {
    name: desc for events in _CATALOG.values() for name, desc in events.items()
}
EVENT_CATEGORIES: dict[str, list[str]] = {cat: list(events) for cat, events in _CATALOG.items()}
_EVENT_CATEGORY: dict[str, str] = {name: cat for cat, names in EVENT_CATEGORIES.items() for name in names}
ALL_EVENTS: list[str] = list(EVENT_DESCRIPTIONS)

if set(ALL_EVENTS) != {e.value for e in WebhookEvent}:
    raise RuntimeError("WebhookEvent members and the event catalog are out of sync")


@dataclass
class EventValidation:
    valid: bool
    invalid: list[str] = field(default_factory=list)


def _name(event: Union[str, WebhookEvent]) -> str:
    return event.value if isinstance(event, WebhookEvent) else event


def is_valid_event(event: Union[str, WebhookEvent]) -> bool:
    return _name(event) in EVENT_DESCRIPTIONS


def parse_event(event: Union[str, WebhookEvent]) -> Optional[WebhookEvent]:
    """Turn a raw event name into a WebhookEvent, or None if it is not in the catalog."""
    if isinstance(event, WebhookEvent):
        return event
    try:
        return WebhookEvent(event)
    except ValueError:
        return None


def validate_events(events: list[str]) -> EventValidation:
    """Report every unknown name, not just the first."""
    invalid = [e for e in events if not is_valid_event(e)]
    return EventValidation(valid=not invalid, invalid=invalid)


def get_event_description(event: Union[str, WebhookEvent]) -> Optional[str]:
    return EVENT_DESCRIPTIONS.get(_name(event))


def get_event_category(event: Union[str, WebhookEvent]) -> Optional[str]:
    return _EVENT_CATEGORY.get(_name(event))
