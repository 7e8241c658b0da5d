from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def utc_date(dt: Optional[datetime] = None) -> str:
    """UTC calendar date (YYYY-MM-DD) used to name log partitions."""
    return (dt or utc_now()).astimezone(timezone.utc).strftime("%Y-%m-%d")


def parse_utc_iso(ts: str) -> Optional[datetime]:
    s = (ts or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[: -len("Z")] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None


def age_seconds(ts: str, *, now: Optional[datetime] = None) -> Optional[float]:
    dt = parse_utc_iso(ts)
    if dt is None:
        return None
    return ((now or utc_now()) - dt).total_seconds()
