from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Iterable, Optional

from database import get_shifts_in_range, list_employees
from policy import load_active_policy, tip_pooling_settings
from tip_pooling import allocate_tips, collect_pool_workers

logger = logging.getLogger(__name__)


def allocate_period_tips(
    session,
    start: datetime.datetime,
    end: datetime.datetime,
    *,
    servers: Iterable[Any] = (),
    total_cents: Optional[int] = None,
    policy: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Allocate tips for shifts starting in ``[start, end)`` under the configured pooling model.

    Workers are the active, tip-eligible employees with worked hours in the period.
    """
    settings = tip_pooling_settings(policy if policy is not None else load_active_policy(session))
    shifts = get_shifts_in_range(session, start, end, include_cancelled=False)
    workers = collect_pool_workers(shifts, list_employees(session))
    logger.info(
        "Allocating %s tips for %d worker(s) between %s and %s",
        settings["pooling_model"],
        len(workers),
        start.isoformat(),
        end.isoformat(),
    )
    return allocate_tips(
        settings["pooling_model"],
        workers,
        servers=servers,
        total_cents=total_cents,
        pools=settings["pools"],
        share_method=settings["share_method"],
        role_weights=settings["role_weights"],
    )
