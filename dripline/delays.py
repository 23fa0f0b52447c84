"""Delay calculation for workflow steps."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import SECONDS_PER_UNIT

logger = logging.getLogger(__name__)


def compute_delay(amount: Optional[float], unit: Optional[str]) -> float:
    """Convert ``amount`` of ``unit`` into seconds.

    Unknown units yield no delay rather than an error.
    """
    if not amount or amount <= 0 or not unit:
        return 0.0
    multiplier = SECONDS_PER_UNIT.get(str(unit))
    if multiplier is None:
        logger.warning(f"Unknown delay unit {unit!r}; running step without delay")
        return 0.0
    return float(amount * multiplier)
