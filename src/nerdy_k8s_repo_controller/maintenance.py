from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable
import logging

from .models import BackupRepository

logger = logging.getLogger(__name__)

DEFAULT_MAINTENANCE_FREQUENCY = timedelta(days=7)


def due_for_maintenance(repository: BackupRepository, now: datetime) -> bool:
    last = repository.status.last_maintenance_time
    if last is None:
        return True
    frequency = repository.spec.maintenance_frequency or DEFAULT_MAINTENANCE_FREQUENCY
    return last + frequency < now


def resolve_maintenance_frequency(
    *,
    override: timedelta | None,
    suggested: Callable[[], timedelta | None],
) -> timedelta:
    """Pick the maintenance frequency for a repository.

    Order: a positive operator override, then the backend's suggestion, then
    ``DEFAULT_MAINTENANCE_FREQUENCY``. A failing or non-positive suggestion
    falls through to the default.
    """
    if override is not None and override > timedelta():
        logger.info("Using operator maintenance frequency %s", override)
        return override

    try:
        frequency = suggested()
    except Exception as error:  # pylint: disable=broad-except
        logger.warning("Failed to get suggested maintenance frequency, using default: %s", error)
        return DEFAULT_MAINTENANCE_FREQUENCY

    if frequency is None or frequency <= timedelta():
        logger.warning("Repository suggested maintenance frequency %s, using default", frequency)
        return DEFAULT_MAINTENANCE_FREQUENCY

    logger.info("Using repository suggested maintenance frequency %s", frequency)
    return frequency
