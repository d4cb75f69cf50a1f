"""Small helpers shared by the blueprints and services: request parsing and UTC time."""

from datetime import datetime, timezone

from flask import request


def json_body() -> dict | None:
    """Return the request JSON object, or None when the body is missing or not an object."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


def parse_bool_arg(name: str, default: bool = False) -> bool:
    value = request.args.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
