"""Natural-language recency for retrieved evidence."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

from .models import RecencyBucket, TimeContext

JUST_NOW_WINDOW = timedelta(minutes=10)

_PHRASES = {
    RecencyBucket.JUST_NOW: "just now",
    RecencyBucket.EARLIER_TODAY: "earlier today",
    RecencyBucket.YESTERDAY: "yesterday",
    RecencyBucket.FEW_DAYS_AGO: "a few days ago",
    RecencyBucket.LAST_WEEK: "last week",
    RecencyBucket.FEW_WEEKS_AGO: "a few weeks ago",
    RecencyBucket.FEW_MONTHS_AGO: "a few months ago",
    RecencyBucket.WHILE_BACK: "a while back",
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def recency_bucket(timestamp: datetime, now: datetime | None = None) -> RecencyBucket:
    now = _as_utc(now or datetime.now(timezone.utc))
    timestamp = _as_utc(timestamp)

    if now - timestamp < JUST_NOW_WINDOW:
        return RecencyBucket.JUST_NOW

    days = (now.date() - timestamp.date()).days
    if days <= 0:
        return RecencyBucket.EARLIER_TODAY
    if days == 1:
        return RecencyBucket.YESTERDAY
    if days < 7:
        return RecencyBucket.FEW_DAYS_AGO
    if days < 14:
        return RecencyBucket.LAST_WEEK
    if days < 60:
        return RecencyBucket.FEW_WEEKS_AGO
    if days < 365:
        return RecencyBucket.FEW_MONTHS_AGO
    return RecencyBucket.WHILE_BACK


def describe_recency(
    timestamp: datetime | None, now: datetime | None = None
) -> TimeContext:
    """Describe how long ago ``timestamp`` was.

    Items from the last few minutes should be referred to directly; older
    items may be introduced with remembering language ("you mentioned...").
    A missing timestamp is treated as "just now".
    """
    if timestamp is None:
        bucket = RecencyBucket.JUST_NOW
    else:
        bucket = recency_bucket(timestamp, now)
    return TimeContext(
        phrase=_PHRASES[bucket],
        bucket=bucket,
        use_remembering_language=bucket != RecencyBucket.JUST_NOW,
    )


def recency_guidance(
    timestamps: Iterable[datetime | None], now: datetime | None = None
) -> str:
    """One line of guidance on how to reference a set of retrieved items."""
    buckets = {describe_recency(ts, now).bucket for ts in timestamps}
    if not buckets:
        return ""

    same_day = {RecencyBucket.JUST_NOW, RecencyBucket.EARLIER_TODAY}
    distant = {RecencyBucket.FEW_MONTHS_AGO, RecencyBucket.WHILE_BACK}

    if buckets <= same_day:
        return (
            "All of this was said today. Refer to it naturally, without "
            "framing it as a memory."
        )
    if buckets & distant:
        return (
            "Some of this is from a while ago. Acknowledge the time that has "
            "passed and check whether it still feels true before relying on it."
        )
    return (
        "This is from recent days. It is fine to say \"you mentioned\" or "
        "\"last time\", using the time phrase given with each item."
    )
