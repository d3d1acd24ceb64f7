from datetime import datetime, timedelta, timezone

from campus_eta.prediction_api.eta.models import PickupWindow

WINDOW_HALF_WIDTH = timedelta(minutes=2.5)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_pickup_window(estimated_minutes: float, now: datetime | None = None) -> PickupWindow:
    """
    Derive the 5-minute pickup window for an estimate.

    The window is centered ``estimated_minutes`` after ``now`` and spans
    2.5 minutes on each side.

    Args:
        estimated_minutes: Minutes from now until the order is ready (>= 0)
        now: Reference time (defaults to current UTC time)

    Returns:
        PickupWindow with start, end and center
    """
    if estimated_minutes < 0:
        raise ValueError(f"estimated_minutes must be >= 0, got {estimated_minutes}")

    now = now or utcnow()
    center = now + timedelta(minutes=estimated_minutes)

    return PickupWindow(
        start=center - WINDOW_HALF_WIDTH,
        end=center + WINDOW_HALF_WIDTH,
        center=center,
    )
