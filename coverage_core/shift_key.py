"""Canonical identity for one unit of coverage.

A ShiftKey is ``date + time slot`` with an optional classroom. Equality and
hashing are strict over all three fields, so consumers that only care about
``date + slot`` must narrow keys explicitly with :meth:`ShiftKey.at` before
using them as lookup keys. Absence shifts, availability and conflict checks
work at ``SLOT`` granularity; the baseline grid and flex placements work at
``CLASSROOM`` granularity.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import total_ordering


class Granularity(str, Enum):
    SLOT = "slot"
    CLASSROOM = "classroom"


@total_ordering
@dataclass(frozen=True)
class ShiftKey:
    date: str
    time_slot_id: str
    classroom_id: str | None = None

    def __post_init__(self):
        if self.classroom_id == "":
            object.__setattr__(self, "classroom_id", None)

    def at(self, granularity: Granularity) -> ShiftKey:
        if granularity is Granularity.SLOT:
            if self.classroom_id is None:
                return self
            return ShiftKey(self.date, self.time_slot_id)
        return self

    @property
    def slot_key(self) -> ShiftKey:
        return self.at(Granularity.SLOT)

    def matches(self, other: ShiftKey, granularity: Granularity = Granularity.SLOT) -> bool:
        return self.at(granularity) == other.at(granularity)

    def sort_key(self) -> tuple[str, str, str]:
        return (self.date, self.time_slot_id, self.classroom_id or "")

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ShiftKey):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def to_string(self) -> str:
        if self.classroom_id:
            return f"{self.date}|{self.time_slot_id}|{self.classroom_id}"
        return f"{self.date}|{self.time_slot_id}"

    @classmethod
    def from_string(cls, value: str) -> ShiftKey:
        parts = value.split("|")
        if len(parts) == 2:
            return cls(parts[0], parts[1])
        if len(parts) == 3:
            return cls(parts[0], parts[1], parts[2])
        raise ValueError(f"Malformed shift key: {value!r}")

    def to_dict(self) -> dict[str, str | None]:
        return {
            "date": self.date,
            "time_slot_id": self.time_slot_id,
            "classroom_id": self.classroom_id,
        }
