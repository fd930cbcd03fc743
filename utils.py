from datetime import datetime, timezone

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING

from errors import InvalidInput


def parse_object_id(value, label: str = "ID") -> ObjectId:
    """Return value as an ObjectId or raise InvalidInput naming the bad id."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise InvalidInput(f"Invalid {label}: {value}")
    return ObjectId(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def round_half_up(numerator: int, denominator: int) -> int:
    """numerator / denominator rounded half up, 0 when denominator is 0."""
    numerator, denominator = int(numerator), int(denominator)
    if denominator <= 0:
        return 0
    return (2 * numerator + denominator) // (2 * denominator)


def percent(part: int, whole: int) -> int:
    return round_half_up(100 * int(part), whole)


def sort_spec(fields: dict, sort_by: str, sort_order: str) -> list:
    """Translate an API sortBy/sortOrder pair into a pymongo sort list.

    fields maps the camelCase names a client may sort on to stored field names.
    The _id tiebreak keeps pages stable when the sort key repeats.
    """
    if sort_by not in fields:
        raise InvalidInput(f"Invalid sort field: {sort_by}")
    if sort_order not in ("asc", "desc"):
        raise InvalidInput(f"Invalid sort order: {sort_order}")
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    return [(fields[sort_by], direction), ("_id", direction)]


def page_info(page: int, limit: int, total: int, total_key: str) -> dict:
    total_pages = (total + limit - 1) // limit
    return {
        "currentPage": page,
        "totalPages": total_pages,
        total_key: total,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
