"""Pass kinds and their template schemas.

A pairing session can only be created for a known pass kind, and its
template data must carry the fields that kind requires.
"""

import secrets
import string
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable

from qrpass.errors import ValidationError

MAX_FIELDS = 32
MAX_KEY_LENGTH = 64
MAX_VALUE_LENGTH = 500


@dataclass(frozen=True)
class PassKind:
    """Schema for one kind of pass.

    Attributes:
        name: Wire name, e.g. "boarding-pass".
        label: Human-readable label for menus.
        required: Fields target data must contain.
        sample: Builds example template data for the CLI.
    """

    name: str
    label: str
    required: tuple[str, ...]
    sample: Callable[[], dict[str, Any]] = field(compare=False, repr=False)


def _ref(prefix: str) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return f"{prefix}-" + "".join(secrets.choice(alphabet) for _ in range(9))


def _in_days(days: int) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


def _boarding_pass() -> dict[str, Any]:
    return {
        "title": "Flight to NYC",
        "airline": "Sky Airlines",
        "from": "LAX",
        "to": "JFK",
        "flight": "SA123",
        "seat": "12A",
        "gate": "B7",
        "boarding": "10:30 AM",
        "departure": "11:00 AM",
        "date": _in_days(0),
        "passenger": "John Doe",
        "class": "Economy",
    }


def _event_ticket() -> dict[str, Any]:
    return {
        "title": "Concert Ticket",
        "event": "Summer Music Festival",
        "venue": "Madison Square Garden",
        "date": _in_days(7),
        "time": "7:00 PM",
        "section": "A",
        "row": "12",
        "seat": "5",
        "price": "$150.00",
        "ticketNumber": _ref("TKT"),
    }


def _loyalty_card() -> dict[str, Any]:
    return {
        "title": "VIP Membership",
        "program": "Gold Member",
        "memberNumber": _ref("GOLD"),
        "memberSince": "2024",
        "points": 1000 + secrets.randbelow(5000),
        "tier": "Gold",
        "validUntil": _in_days(365),
    }


def _parking_pass() -> dict[str, Any]:
    return {
        "title": "Parking Pass",
        "location": "Downtown Parking Garage",
        "level": "Level 3",
        "spot": "A-45",
        "validFrom": _in_days(0),
        "validUntil": _in_days(30),
        "vehicle": "Toyota Camry",
        "plate": f"ABC-{1000 + secrets.randbelow(9000)}",
        "passNumber": _ref("PARK"),
    }


def _gym_membership() -> dict[str, Any]:
    return {
        "title": "Gym Membership",
        "gym": "FitLife Fitness Center",
        "memberName": "John Doe",
        "membershipType": "Premium",
        "memberNumber": _ref("GYM"),
        "validUntil": _in_days(365),
        "facilities": "All Access",
    }


DEFAULT_KINDS = (
    PassKind("boarding-pass", "Boarding Pass", ("title", "from", "to", "flight"), _boarding_pass),
    PassKind("event-ticket", "Event Ticket", ("title", "event", "venue", "date"), _event_ticket),
    PassKind("loyalty-card", "Loyalty Card", ("title", "program", "memberNumber"), _loyalty_card),
    PassKind("parking-pass", "Parking Pass", ("title", "location", "validUntil"), _parking_pass),
    PassKind("gym-membership", "Gym Membership", ("title", "gym", "memberNumber"), _gym_membership),
)


class PassKindRegistry:
    """Known pass kinds, used to validate session targets."""

    def __init__(self, kinds: tuple[PassKind, ...] = DEFAULT_KINDS):
        self._kinds = {kind.name: kind for kind in kinds}

    def get(self, name: str) -> PassKind:
        """Look up a kind.

        Raises:
            ValidationError: If the kind is unknown.
        """
        kind = self._kinds.get(name) if isinstance(name, str) else None
        if kind is None:
            known = ", ".join(sorted(self._kinds))
            raise ValidationError(f"Unknown target kind {name!r} (expected one of: {known})")
        return kind

    def names(self) -> list[str]:
        return list(self._kinds)

    def all(self) -> list[PassKind]:
        return list(self._kinds.values())

    def validate(self, name: str, data: Any) -> dict[str, Any]:
        """Validate target data against the kind's schema.

        Values must be scalars (str, int, float, bool); required fields
        must be present and non-empty.

        Args:
            name: Target kind.
            data: Target data from the request.

        Returns:
            The validated data as a new dict.

        Raises:
            ValidationError: If kind or data is invalid.
        """
        kind = self.get(name)

        if not isinstance(data, dict):
            raise ValidationError("targetData must be an object")
        if not data:
            raise ValidationError("targetData must not be empty")
        if len(data) > MAX_FIELDS:
            raise ValidationError(f"targetData has more than {MAX_FIELDS} fields")

        for key, value in data.items():
            if not isinstance(key, str) or not key or len(key) > MAX_KEY_LENGTH:
                raise ValidationError(f"Invalid targetData field name: {key!r}")
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise ValidationError(f"targetData.{key} must be a scalar value")
            if isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
                raise ValidationError(f"targetData.{key} is too long")

        missing = [
            f for f in kind.required
            if data.get(f) is None or (isinstance(data.get(f), str) and not data[f].strip())
        ]
        if missing:
            raise ValidationError(
                f"targetData for {kind.name} is missing: {', '.join(missing)}"
            )

        return dict(data)

    def __contains__(self, name: str) -> bool:
        return name in self._kinds
