"""
Clinic day schedule: slot generation and availability resolution.

Slots carry structured start/end times, so availability checks never need to
parse the display label back into a clock time.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple

from validators.business_rules import ClinicRules

SLOT_DURATION_MINUTES = 50
SLOT_INTERVAL_MINUTES = 60  # 50 minute session + 10 minute gap

MORNING_WINDOW = (time(10, 0), time(13, 0))
LUNCH_WINDOW = (time(13, 0), time(14, 0))
AFTERNOON_WINDOW = (time(14, 0), time(17, 0))

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def format_clock(value: time) -> str:
    """10:00 -> '10:00 AM', 13:00 -> '01:00 PM'"""
    return value.strftime("%I:%M %p")


@dataclass(frozen=True)
class Slot:
    start: time
    end: time
    is_break: bool = False

    @property
    def label(self) -> str:
        return f"{format_clock(self.start)} - {format_clock(self.end)}"

    @property
    def is_bookable(self) -> bool:
        return not self.is_break

    def starts_at(self, day: date) -> datetime:
        return datetime.combine(day, self.start)


@dataclass(frozen=True)
class SlotAvailability:
    slot: Slot
    is_booked: bool

    def to_dict(self) -> dict:
        return {"time": self.slot.label, "isBooked": self.is_booked}


def _window_slots(window: Tuple[time, time]) -> List[Slot]:
    anchor = date(2000, 1, 1)
    cursor = datetime.combine(anchor, window[0])
    window_end = datetime.combine(anchor, window[1])
    slots = []
    while cursor + timedelta(minutes=SLOT_DURATION_MINUTES) <= window_end:
        end = cursor + timedelta(minutes=SLOT_DURATION_MINUTES)
        slots.append(Slot(start=cursor.time(), end=end.time()))
        cursor += timedelta(minutes=SLOT_INTERVAL_MINUTES)
    return slots


def _build_day_schedule() -> Tuple[Slot, ...]:
    lunch = Slot(start=LUNCH_WINDOW[0], end=LUNCH_WINDOW[1], is_break=True)
    return tuple(_window_slots(MORNING_WINDOW) + [lunch] + _window_slots(AFTERNOON_WINDOW))


_DAY_SCHEDULE = _build_day_schedule()
_SLOTS_BY_LABEL = {slot.label: slot for slot in _DAY_SCHEDULE}
_SLOT_ORDER = {slot.label: index for index, slot in enumerate(_DAY_SCHEDULE)}


def generate_time_slots() -> Tuple[Slot, ...]:
    """The fixed, ordered slot sequence for any open clinic day (lunch included)"""
    return _DAY_SCHEDULE


def find_slot(label: Optional[str]) -> Optional[Slot]:
    if not label:
        return None
    return _SLOTS_BY_LABEL.get(label.strip())


def slot_sort_key(label: str) -> int:
    """Position of a label in the day schedule; unknown labels sort last"""
    return _SLOT_ORDER.get(label, len(_SLOT_ORDER))


def is_closed_day(day: date, rules: ClinicRules) -> bool:
    return day.weekday() == rules.closed_weekday


def closed_day_name(rules: ClinicRules) -> str:
    return WEEKDAY_NAMES[rules.closed_weekday]


def is_inside_same_day_cutoff(slot: Slot, day: date, now: datetime, rules: ClinicRules) -> bool:
    """True when ``slot`` on ``day`` has started or starts within the cutoff window.

    Only applies when ``day`` is today; the boundary (exactly the cutoff away)
    counts as inside the window.
    """
    if day != now.date():
        return False
    lead_time = slot.starts_at(day) - now
    return lead_time <= timedelta(minutes=rules.same_day_cutoff_minutes)


def resolve_availability(
    day: date,
    claimed_labels: Iterable[str],
    now: datetime,
    rules: ClinicRules,
) -> List[SlotAvailability]:
    """Per-slot availability for ``day``.

    Returns an empty list when the clinic is closed on that weekday, which is
    distinct from a day where every slot is booked.
    """
    if is_closed_day(day, rules):
        return []

    claimed = set(claimed_labels)
    availability = []
    for slot in generate_time_slots():
        unavailable = (
            slot.label in claimed
            or is_inside_same_day_cutoff(slot, day, now, rules)
            or slot.is_break
        )
        availability.append(SlotAvailability(slot=slot, is_booked=unavailable))
    return availability
