"""Shared blueprint utilities.

parse_date_input:  ISO / DD.MM.YYYY date parsing, raises ValueError
require_int:       pull a positive integer field out of a JSON body
"""
from datetime import date, datetime


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, DD.MM.YYYY, date objects. Empty input gives None.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        try:
            return datetime.strptime(str(value), "%d.%m.%Y").date()
        except ValueError as exc:
            raise ValueError(
                "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
            ) from exc


def require_int(data: dict, key: str) -> int:
    """Return ``data[key]`` as a positive int, raising ValueError otherwise."""
    value = data.get(key)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} is required and must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{key} must be positive")
    return parsed
