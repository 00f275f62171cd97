from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from intervals import net_minutes, shift_value

logger = logging.getLogger(__name__)

CENT = Decimal("1")


class ShareMethod(str, enum.Enum):
    HOURS = "hours"
    ROLE = "role"
    EVEN = "even"


class PoolingModel(str, enum.Enum):
    FULL_POOL = "full_pool"
    PERCENTAGE_CONTRIBUTION = "percentage_contribution"


@dataclass(frozen=True)
class ContributionPool:
    id: str
    name: str
    contribution_percentage: Decimal
    share_method: ShareMethod = ShareMethod.HOURS
    eligible_employee_ids: Tuple[Any, ...] = ()
    role_weights: Dict[str, Decimal] = field(default_factory=dict, hash=False)

    def is_eligible(self, employee_id: Any) -> bool:
        return str(employee_id) in {str(value) for value in self.eligible_employee_ids}


def _decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be numeric")
    try:
        number = Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"{field_name} must be numeric, got {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"{field_name} must be finite, got {value!r}")
    return number


def _pick(payload: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake, default)


def parse_contribution_pool(payload: Any) -> ContributionPool:
    """Validate one pool definition; accepts camelCase or snake_case keys."""
    if isinstance(payload, ContributionPool):
        return payload
    if not isinstance(payload, Mapping):
        raise TypeError("Contribution pool must be a mapping")
    pool_id = payload.get("id")
    if pool_id in (None, ""):
        raise ValueError("Contribution pool requires an id")
    percentage = _decimal(_pick(payload, "contributionPercentage", "contribution_percentage"), "contribution_percentage")
    if not Decimal("0") < percentage <= Decimal("100"):
        raise ValueError(f"contribution_percentage must be in (0, 100], got {percentage}")
    method_value = _pick(payload, "shareMethod", "share_method", ShareMethod.HOURS.value)
    try:
        method = ShareMethod(str(method_value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown share method {method_value!r}") from exc
    eligible = _pick(payload, "eligibleEmployeeIds", "eligible_employee_ids", []) or []
    if not isinstance(eligible, (list, tuple, set)):
        raise TypeError("eligible_employee_ids must be a list")
    raw_weights = _pick(payload, "roleWeights", "role_weights", {}) or {}
    if not isinstance(raw_weights, Mapping):
        raise TypeError("role_weights must be a mapping of role to weight")
    weights: Dict[str, Decimal] = {}
    for role, weight in raw_weights.items():
        value = _decimal(weight, f"role weight for {role}")
        if value < 0:
            raise ValueError(f"Role weight for {role} cannot be negative")
        weights[str(role)] = value
    return ContributionPool(
        id=str(pool_id),
        name=str(payload.get("name") or pool_id),
        contribution_percentage=percentage,
        share_method=method,
        eligible_employee_ids=tuple(eligible),
        role_weights=weights,
    )


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP))


def distribute_by_ratio(total_cents: int, weights: Sequence[Any]) -> List[int]:
    """Split ``total_cents`` in proportion to ``weights`` without losing a cent.

    Every share but the last is rounded half up; the last absorbs the remainder.
    With no weight at all the split is even, remainder on the last participant.
    """
    count = len(weights)
    if count == 0:
        return []
    total = int(total_cents)
    normalized = [max(Decimal("0"), _decimal(weight, "weight")) for weight in weights]
    weight_sum = sum(normalized, Decimal("0"))
    if weight_sum == 0:
        logger.debug("No weight signal for %d participant(s); splitting %d evenly", count, total)
        base = total // count
        return [base] * (count - 1) + [total - base * (count - 1)]
    shares: List[int] = []
    allocated = 0
    for weight in normalized[:-1]:
        share = round_half_up(Decimal(total) * weight / weight_sum)
        # Never hand out more than is left, so the last share cannot go negative.
        share = min(share, total - allocated)
        shares.append(share)
        allocated += share
    shares.append(total - allocated)
    return shares


def _participant_id(participant: Any) -> Any:
    value = shift_value(participant, "employee_id")
    return value if value is not None else shift_value(participant, "id")


def _shares(total_cents: int, participants: Sequence[Any], weights: Sequence[Any], extra: str = "") -> List[Dict[str, Any]]:
    amounts = distribute_by_ratio(total_cents, weights)
    shares = []
    for participant, amount in zip(participants, amounts):
        share = {
            "employee_id": _participant_id(participant),
            "name": shift_value(participant, "name", ""),
            "amount_cents": amount,
        }
        if extra == "hours":
            share["hours"] = shift_value(participant, "hours", 0) or 0
        elif extra == "role":
            share["role"] = shift_value(participant, "role", "") or ""
        shares.append(share)
    return shares


def calculate_tip_split_even(total_cents: int, participants: Sequence[Any]) -> List[Dict[str, Any]]:
    participants = list(participants)
    return _shares(total_cents, participants, [1] * len(participants))


def calculate_tip_split_by_hours(total_cents: int, participants: Sequence[Any]) -> List[Dict[str, Any]]:
    participants = list(participants)
    weights = [shift_value(item, "hours", 0) or 0 for item in participants]
    return _shares(total_cents, participants, weights, "hours")


def calculate_tip_split_by_role(
    total_cents: int,
    participants: Sequence[Any],
    role_weights: Mapping[str, Any],
) -> List[Dict[str, Any]]:
    """Weight each participant by their role; unconfigured roles weigh nothing."""
    participants = list(participants)
    weights = [role_weights.get(shift_value(item, "role", "") or "", 0) for item in participants]
    return _shares(total_cents, participants, weights, "role")


def calculate_tip_split(
    total_cents: int,
    participants: Sequence[Any],
    method: Any = ShareMethod.HOURS,
    role_weights: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    share_method = ShareMethod(method.value if isinstance(method, ShareMethod) else str(method).strip().lower())
    if share_method is ShareMethod.EVEN:
        return calculate_tip_split_even(total_cents, participants)
    if share_method is ShareMethod.ROLE:
        return calculate_tip_split_by_role(total_cents, participants, role_weights or {})
    return calculate_tip_split_by_hours(total_cents, participants)


def rebalance_allocations(
    total_cents: int,
    shares: Sequence[Mapping[str, Any]],
    employee_id: Any,
    new_amount_cents: int,
) -> List[Dict[str, Any]]:
    """Apply a manual override and spread the rest over the others by their current shares."""
    shares = [dict(share) for share in shares]
    target = next((share for share in shares if str(share["employee_id"]) == str(employee_id)), None)
    if target is None:
        raise ValueError(f"Employee {employee_id} is not part of this allocation")
    others = [share for share in shares if share is not target]
    if not others:
        target["amount_cents"] = int(total_cents)
        return shares
    override = min(max(int(new_amount_cents), 0), int(total_cents))
    target["amount_cents"] = override
    amounts = distribute_by_ratio(int(total_cents) - override, [share["amount_cents"] for share in others])
    for share, amount in zip(others, amounts):
        share["amount_cents"] = amount
    return shares


def calculate_percentage_contributions(
    servers: Iterable[Any],
    pools: Iterable[Any],
) -> List[Dict[str, Any]]:
    pools = [parse_contribution_pool(pool) for pool in pools]
    contributions = []
    for server in servers:
        earned = int(shift_value(server, "earned_amount_cents", 0) or 0)
        for pool in pools:
            contributions.append(
                {
                    "server_id": shift_value(server, "employee_id"),
                    "pool_id": pool.id,
                    "amount_cents": round_half_up(Decimal(earned) * pool.contribution_percentage / Decimal(100)),
                }
            )
    return contributions


def calculate_pool_refunds(
    pool_id: Any,
    contributions: Iterable[Mapping[str, Any]],
    pool_total_cents: int,
) -> List[Dict[str, Any]]:
    """Return a pool's total to its contributors in proportion to what each put in."""
    pool_contributions = [item for item in contributions if str(item["pool_id"]) == str(pool_id)]
    amounts = distribute_by_ratio(pool_total_cents, [item["amount_cents"] for item in pool_contributions])
    return [
        {"server_id": item["server_id"], "pool_id": item["pool_id"], "refund_cents": amount}
        for item, amount in zip(pool_contributions, amounts)
    ]


def _as_participant(worker: Any) -> Dict[str, Any]:
    return {
        "employee_id": shift_value(worker, "employee_id"),
        "name": shift_value(worker, "name", ""),
        "hours": shift_value(worker, "hours_worked", 0) or 0,
        "role": shift_value(worker, "role", "") or "",
    }


def _pool_participants(pool: ContributionPool, workers: Sequence[Any]) -> List[Dict[str, Any]]:
    return [_as_participant(worker) for worker in workers if pool.is_eligible(shift_value(worker, "employee_id"))]


def calculate_percentage_pool_allocations(
    servers: Iterable[Any],
    pools: Iterable[Any],
    workers: Iterable[Any],
) -> Dict[str, List[Dict[str, Any]]]:
    """Allocate percentage contributions from servers into support pools.

    A pool nobody eligible worked for is refunded to its contributors. Split
    items merge what each employee retains and receives, and always sum to the
    servers' combined earnings.
    """
    servers = list(servers)
    pools = [parse_contribution_pool(pool) for pool in pools]
    workers = list(workers)
    contributions = calculate_percentage_contributions(servers, pools)

    refunded: Dict[str, int] = defaultdict(int)
    received: Dict[str, int] = defaultdict(int)
    names: Dict[str, str] = {}
    recipient_order: List[Any] = []
    pool_results: List[Dict[str, Any]] = []
    for pool in pools:
        pool_total = sum(item["amount_cents"] for item in contributions if item["pool_id"] == pool.id)
        participants = _pool_participants(pool, workers)
        if not participants:
            refunds = calculate_pool_refunds(pool.id, contributions, pool_total)
            for refund in refunds:
                refunded[str(refund["server_id"])] += refund["refund_cents"]
            logger.debug("Pool %s had no eligible workers; refunded %d cents", pool.id, pool_total)
            pool_results.append(
                {
                    "pool_id": pool.id,
                    "name": pool.name,
                    "total_contributed": pool_total,
                    "total_distributed": 0,
                    "total_refunded": pool_total,
                    "shares": [],
                    "refunds": refunds,
                }
            )
            continue
        shares = calculate_tip_split(pool_total, participants, pool.share_method, pool.role_weights)
        for share in shares:
            key = str(share["employee_id"])
            if key not in names:
                recipient_order.append(share["employee_id"])
                names[key] = share["name"]
            received[key] += share["amount_cents"]
        pool_results.append(
            {
                "pool_id": pool.id,
                "name": pool.name,
                "total_contributed": pool_total,
                "total_distributed": pool_total,
                "total_refunded": 0,
                "shares": shares,
                "refunds": [],
            }
        )

    server_results: List[Dict[str, Any]] = []
    split_totals: Dict[str, int] = {}
    split_order: List[Any] = []
    for server in servers:
        server_id = shift_value(server, "employee_id")
        key = str(server_id)
        earned = int(shift_value(server, "earned_amount_cents", 0) or 0)
        contributed = sum(item["amount_cents"] for item in contributions if str(item["server_id"]) == key)
        retained = earned - contributed + refunded[key]
        server_results.append(
            {
                "employee_id": server_id,
                "name": shift_value(server, "name", ""),
                "earned_amount_cents": earned,
                "contributed_amount_cents": contributed,
                "refunded_amount_cents": refunded[key],
                "retained_amount_cents": retained,
            }
        )
        if key not in split_totals:
            split_order.append(server_id)
            split_totals[key] = 0
            names.setdefault(key, shift_value(server, "name", ""))
        split_totals[key] += retained

    for employee_id in recipient_order:
        key = str(employee_id)
        if key not in split_totals:
            split_order.append(employee_id)
            split_totals[key] = 0
        split_totals[key] += received[key]

    split_items = [
        {"employee_id": employee_id, "name": names.get(str(employee_id), ""), "amount_cents": split_totals[str(employee_id)]}
        for employee_id in split_order
    ]
    return {"server_results": server_results, "pool_results": pool_results, "split_items": split_items}


def allocate_tips(
    pooling_model: Any,
    workers: Iterable[Any],
    *,
    servers: Iterable[Any] = (),
    total_cents: Optional[int] = None,
    pools: Iterable[Any] = (),
    share_method: Any = ShareMethod.HOURS,
    role_weights: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Allocate a period's tips under ``pooling_model``.

    ``full_pool`` splits the whole amount over every worker by ``share_method``;
    ``total_cents`` defaults to what the servers earned. ``percentage_contribution``
    lets servers keep their earnings minus what they pay into ``pools``.
    """
    model = PoolingModel(pooling_model.value if isinstance(pooling_model, PoolingModel) else str(pooling_model))
    servers = list(servers)
    workers = list(workers)
    if model is PoolingModel.PERCENTAGE_CONTRIBUTION:
        return {"pooling_model": model.value, **calculate_percentage_pool_allocations(servers, pools, workers)}
    if total_cents is None:
        total_cents = sum(int(shift_value(server, "earned_amount_cents", 0) or 0) for server in servers)
    participants = [_as_participant(worker) for worker in workers]
    if not participants and total_cents:
        logger.warning("No workers to share %d pooled cents", total_cents)
    shares = calculate_tip_split(int(total_cents), participants, share_method, role_weights)
    return {"pooling_model": model.value, "total_cents": int(total_cents), "split_items": shares}


def filter_tip_eligible(employees: Iterable[Any]) -> List[Any]:
    """Active, non-salaried employees whose tip eligibility is not switched off."""
    eligible = []
    for employee in employees:
        if shift_value(employee, "status", "active") != "active":
            continue
        if shift_value(employee, "compensation_type", "hourly") == "salary":
            continue
        if shift_value(employee, "tip_eligible") is False:
            continue
        eligible.append(employee)
    return eligible


def collect_pool_workers(shifts: Iterable[Any], employees: Iterable[Any]) -> List[Dict[str, Any]]:
    """Hours worked per tip-eligible employee, from their non-cancelled shifts."""
    roster = {str(shift_value(employee, "id")): employee for employee in filter_tip_eligible(employees)}
    minutes: Dict[str, int] = defaultdict(int)
    for shift in shifts:
        key = str(shift_value(shift, "employee_id"))
        if key in roster and shift_value(shift, "status") != "cancelled":
            minutes[key] += net_minutes(shift)
    workers = []
    for key, employee in roster.items():
        if minutes[key] <= 0:
            continue
        roles = getattr(employee, "role_list", None)
        if roles is None:
            raw_roles = shift_value(employee, "roles", "") or ""
            roles = [role.strip() for role in raw_roles.split(",") if role.strip()] if isinstance(raw_roles, str) else list(raw_roles)
        workers.append(
            {
                "employee_id": shift_value(employee, "id"),
                "name": shift_value(employee, "full_name") or shift_value(employee, "name", ""),
                "hours_worked": round(minutes[key] / 60, 2),
                "role": roles[0] if roles else "",
            }
        )
    return workers


def format_currency_from_cents(cents: int) -> str:
    amount = Decimal(int(cents)) / Decimal(100)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
