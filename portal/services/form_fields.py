"""
Form-field extraction for vacation requests.

Request form data is an opaque key/value map whose keys are chosen by
whoever designed the form. ``FormFieldExtractor`` recovers the leave
fields from it:

1. Well-known keys first: ``leaveType``, ``startDate``, ``endDate``,
   ``substituteUserId``.
2. Otherwise a scan over the string values, in insertion order:
   - a value equal to ``Annual`` / ``OnDemand`` / ``Circumstantial`` /
     ``Sick`` is the leave type;
   - the first two ``YYYY-MM-DD`` values are the start and end date;
   - failing an exact leave-type value, the first value containing a
     leave-type keyword (e.g. "annual", "on demand", "l4") decides it.

The heuristic lives here alone so the approval path never guesses.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date

from portal.models.vacation import LeaveType

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Checked in this order; the first matching value wins
_LEAVE_KEYWORDS = (
    (LeaveType.ANNUAL, ("wypocz", "annual")),
    (LeaveType.ON_DEMAND, ("żąd", "zadanie", "on demand", "ondemand", "on-demand")),
    (LeaveType.CIRCUMSTANTIAL, ("okolicz", "circumstantial")),
    (LeaveType.SICK, ("zwolnienie", "l4", "sick")),
)

LEAVE_TYPE_KEY = "leaveType"
START_DATE_KEY = "startDate"
END_DATE_KEY = "endDate"
SUBSTITUTE_KEY = "substituteUserId"


def parse_form_data(raw) -> dict:
    """Return form data as a dict. Accepts a dict or its JSON text.

    Raises ValueError when ``raw`` is not a JSON object.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Form data is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Form data must be a JSON object")
    return data


def _as_date(value) -> date | None:
    if not isinstance(value, str) or not _DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def _as_user_id(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


@dataclass(frozen=True)
class VacationFormFields:
    leave_type: str | None
    start_date: date | None
    end_date: date | None
    substitute_user_id: int | None

    @property
    def is_complete(self) -> bool:
        return self.leave_type is not None and self.start_date is not None and self.end_date is not None


class FormFieldExtractor:
    """Named accessors over one request's form data."""

    def __init__(self, form_data):
        self._data = parse_form_data(form_data)

    def _string_values(self):
        for value in self._data.values():
            if isinstance(value, str) and value.strip():
                yield value.strip()

    def leave_type(self) -> str | None:
        named = self._data.get(LEAVE_TYPE_KEY)
        if named in LeaveType.ALL:
            return named

        for value in self._string_values():
            if value in LeaveType.ALL:
                return value

        for value in self._string_values():
            lowered = value.lower()
            for leave_type, keywords in _LEAVE_KEYWORDS:
                if any(k in lowered for k in keywords):
                    return leave_type
        return None

    def date_range(self) -> tuple[date | None, date | None]:
        start = _as_date(self._data.get(START_DATE_KEY))
        end = _as_date(self._data.get(END_DATE_KEY))
        if start is not None and end is not None:
            return start, end

        found: list[date] = []
        for value in self._string_values():
            parsed = _as_date(value)
            if parsed is not None:
                found.append(parsed)
            if len(found) == 2:
                break
        scanned_start = found[0] if found else None
        scanned_end = found[1] if len(found) > 1 else None
        return start or scanned_start, end or scanned_end

    def substitute_user_id(self, exclude: int | None = None) -> int | None:
        """The ``substituteUserId`` value, unless it names ``exclude``."""
        user_id = _as_user_id(self._data.get(SUBSTITUTE_KEY))
        if user_id is None or user_id == exclude:
            return None
        return user_id

    def vacation_fields(self, exclude_substitute: int | None = None) -> VacationFormFields:
        start, end = self.date_range()
        fields = VacationFormFields(
            leave_type=self.leave_type(),
            start_date=start,
            end_date=end,
            substitute_user_id=self.substitute_user_id(exclude_substitute),
        )
        if not fields.is_complete:
            logger.debug(
                "Incomplete vacation data: leave_type=%s start=%s end=%s",
                fields.leave_type, fields.start_date, fields.end_date,
            )
        return fields
