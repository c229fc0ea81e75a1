from __future__ import annotations

import calendar
from datetime import date, timedelta

from sourcing_worker.schemas.jobs import EnergyDiagnosticsPayload, ListingsPayload, ScheduledWindow

ENERGY_CLASSES = ("A", "B", "C", "D", "E", "F", "G")
METROPOLITAN_DEPARTMENTS = (
    *(f"{number:02d}" for number in range(1, 20)),
    "2A",
    "2B",
    *(f"{number:02d}" for number in range(21, 96)),
)


def monthly_ingest_window(today: date) -> ScheduledWindow:
    """Month whose death file should be ingested on ``today``.

    INSEE publishes a month once it is over, so the first day of a month still
    targets the previous one.
    """
    if today.day == 1:
        previous = today - timedelta(days=1)
        return ScheduledWindow(year=previous.year, month=previous.month)
    return ScheduledWindow(year=today.year, month=today.month)


def daily_energy_diagnostics_payloads(
    today: date,
    *,
    departments: tuple[str, ...] = METROPOLITAN_DEPARTMENTS,
    energy_classes: tuple[str, ...] = ENERGY_CLASSES,
) -> list[EnergyDiagnosticsPayload]:
    """One payload per department and label for diagnostics issued since yesterday.

    Splitting by label keeps each query under the dataset pagination window.
    """
    since = today - timedelta(days=1)
    return [
        EnergyDiagnosticsPayload(department=department, since_date=since, energy_classes=[energy_class])
        for department in departments
        for energy_class in energy_classes
    ]


def months_before(day: date, months: int) -> date:
    index = day.year * 12 + day.month - 1 - months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def recent_listings_payload(today: date, *, lookback_months: int = 3) -> ListingsPayload:
    """Daily feed import of ads that changed during the last ``lookback_months`` months."""
    return ListingsPayload(after_date=months_before(today, lookback_months))
