"""
Data model for GasCounter.

Counter is the only persisted entity: one physical gas-meter installation.

Invariants:
    - id == 0 means "not yet persisted"; the store assigns ids on insert
    - created_date is set once at construction and never changed
    - Text fields are stored trimmed, and blank text is stored as None
    - last_checked_date is set exactly when is_checked becomes True
      (a caller convention, see mark_checked)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..location import LocationFix

TEXT_FIELDS = ("counter_id", "customer_name", "street_name", "notes")


def clean_text(value: str | None) -> str | None:
    """Trim text; blank becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Counter:
    """A recorded gas-meter installation.

    Attributes:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        id: Surrogate key (0 until first save)
        counter_id: Optional business identifier, unique case-insensitively
        customer_name: Optional customer name
        street_name: Optional street name
        notes: Optional free-text notes
        gps_accuracy: Accuracy radius in meters, None when unavailable
        state: Optional status label (opaque to the store)
        is_checked: Whether the counter was checked in the current cycle
        last_checked_date: When it was last marked checked
        created_date: Construction time
        modified_date: Time of the last successful save
    """

    latitude: float
    longitude: float
    id: int = 0
    counter_id: str | None = None
    customer_name: str | None = None
    street_name: str | None = None
    notes: str | None = None
    gps_accuracy: float | None = None
    state: str | None = None
    is_checked: bool = False
    last_checked_date: datetime | None = None
    created_date: datetime = None  # type: ignore[assignment]
    modified_date: datetime = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        now = datetime.now()
        if self.created_date is None:
            self.created_date = now
        if self.modified_date is None:
            self.modified_date = self.created_date

    @classmethod
    def new(cls, latitude: float, longitude: float, **fields: Any) -> Counter:
        """Create an unsaved counter at the given coordinates."""
        fields.pop("id", None)
        return cls(latitude=latitude, longitude=longitude, **fields).normalize()

    @classmethod
    def from_fix(cls, fix: LocationFix, **fields: Any) -> Counter:
        """Create an unsaved counter from a location fix."""
        return cls.new(fix.latitude, fix.longitude, gps_accuracy=fix.accuracy, **fields)

    @property
    def is_persisted(self) -> bool:
        return self.id != 0

    def normalize(self) -> Counter:
        """Trim text fields in place; blank values become None."""
        for name in TEXT_FIELDS:
            setattr(self, name, clean_text(getattr(self, name)))
        return self

    def mark_checked(self, checked: bool = True) -> Counter:
        """Set is_checked and keep last_checked_date in step with it."""
        self.is_checked = checked
        self.last_checked_date = datetime.now() if checked else None
        return self

    def copy(self) -> Counter:
        return dataclasses.replace(self)
