"""
Luck Model

Luck grows by one point per interval held, starting from base luck and capped
at max luck. Hold time is measured from the box's mint (creation) timestamp,
so the score can be re-derived from stored timestamps at any later time.
"""

import time
from typing import Optional


def luck(hold_seconds: float, base_luck: int, max_luck: int, interval_seconds: float) -> int:
    """min(max_luck, base_luck + floor(hold_seconds / interval_seconds))."""
    if interval_seconds <= 0:
        return max_luck
    hold = max(0, hold_seconds)
    return min(max_luck, base_luck + int(hold // interval_seconds))


def luck_at(created_at: float, base_luck: int, max_luck: int,
            interval_seconds: float, now: Optional[float] = None) -> int:
    """Luck for a box minted at created_at, evaluated at now (default: wall clock)."""
    now = time.time() if now is None else now
    return luck(now - created_at, base_luck, max_luck, interval_seconds)


def time_to_max_luck(interval_seconds: float, base_luck: int, max_luck: int) -> float:
    """Seconds of holding needed to go from base luck to max luck."""
    if interval_seconds <= 0:
        return 0
    return (max_luck - base_luck) * interval_seconds


def format_duration(total_seconds: float) -> str:
    """Human-readable duration, e.g. '6 days, 21 hours'."""
    total_seconds = int(total_seconds)
    if total_seconds <= 0:
        return "0 seconds"

    days, rem = divmod(total_seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)

    parts = []
    if days:
        parts.append(f"{days} day{'s' if days > 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours > 1 else ''}")
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes > 1 else ''}")
    # seconds only matter for sub-hour durations
    if seconds and not days and not hours:
        parts.append(f"{seconds} second{'s' if seconds > 1 else ''}")
    return ", ".join(parts) or "0 seconds"


def format_time_to_max_luck(interval_seconds: float, base_luck: int, max_luck: int) -> str:
    if interval_seconds <= 0:
        return "Instant"
    return format_duration(time_to_max_luck(interval_seconds, base_luck, max_luck))
