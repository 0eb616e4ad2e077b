"""
Naive-UTC clock shared by services and ORM defaults.

SQLite stores DateTime without a zone, so every timestamp written or
compared is naive UTC.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
