from __future__ import annotations

import datetime
import random
import sys
from decimal import Decimal
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from tip_pooling import (  # noqa: E402
    PoolingModel,
    ShareMethod,
    allocate_tips,
    calculate_percentage_contributions,
    calculate_percentage_pool_allocations,
    calculate_pool_refunds,
    calculate_tip_split,
    collect_pool_workers,
    distribute_by_ratio,
    filter_tip_eligible,
    format_currency_from_cents,
    parse_contribution_pool,
    rebalance_allocations,
)

UTC = datetime.timezone.utc


def _server(employee_id, name, earned):
    return {"employee_id": employee_id, "name": name, "earned_amount_cents": earned}


def _pool(pool_id, name, percentage, method, eligible, weights=None):
    return {
        "id": pool_id,
        "name": name,
        "contributionPercentage": percentage,
        "shareMethod": method,
        "eligibleEmployeeIds": eligible,
        "roleWeights": weights or {},
    }


def _worker(employee_id, name, hours, role=""):
    return {"employee_id": employee_id, "name": name, "hours_worked": hours, "role": role}


def _amounts(shares):
    return [share["amount_cents"] for share in shares]


def _by_id(items):
    return {item["employee_id"]: item for item in items}


def test_even_split_puts_remainder_on_last() -> None:
    participants = [{"id": "a", "name": "A"}, {"id": "b", "name": "B"}, {"id": "c", "name": "C"}]
    assert _amounts(calculate_tip_split(10000, participants, "even")) == [3333, 3333, 3334]
    assert _amounts(calculate_tip_split(9999, participants, ShareMethod.EVEN)) == [3333, 3333, 3333]


def test_hours_split_without_hours_falls_back_to_even() -> None:
    participants = [{"id": "a", "name": "A", "hours": 0}, {"id": "b", "name": "B", "hours": 0}]
    shares = calculate_tip_split(1000, participants, "hours")
    assert _amounts(shares) == [500, 500]
    assert shares[0]["hours"] == 0


def test_role_split_ignores_unconfigured_roles() -> None:
    participants = [
        {"id": "k1", "name": "Kim", "role": "Chef"},
        {"id": "k2", "name": "Pat", "role": "Prep"},
        {"id": "k3", "name": "Sam", "role": "Host"},
    ]
    shares = calculate_tip_split(1000, participants, "role", {"Chef": 3, "Prep": 1})
    assert _amounts(shares) == [750, 250, 0]
    assert shares[0]["role"] == "Chef"


def test_ratio_split_never_produces_negative_shares() -> None:
    shares = distribute_by_ratio(1, [1, 1, 1])
    assert sum(shares) == 1
    assert all(share >= 0 for share in shares)
    assert distribute_by_ratio(500, []) == []


def _weight_cases():
    rng = random.Random(20240401)
    cases = [
        (1001, [0, 0, 0, 0]),
        (7, [0, 0, 0]),
        (10007, [1, 1, 1, 1, 1, 1]),
        (999, [0.5, 2.25, 0, 7]),
        (1, [3, 3, 3, 3]),
        (0, [5, 1]),
    ]
    for _ in range(40):
        count = rng.randint(1, 9)
        weights = [rng.choice([0, rng.randint(1, 50), round(rng.uniform(0, 12), 2)]) for _ in range(count)]
        cases.append((rng.randint(0, 250000), weights))
    return cases


@pytest.mark.parametrize("total, weights", _weight_cases())
def test_ratio_split_is_remainder_exact(total, weights) -> None:
    shares = distribute_by_ratio(total, weights)
    assert len(shares) == len(weights)
    assert sum(shares) == total
    assert all(share >= 0 for share in shares)


def test_zero_weights_split_evenly_with_remainder_last() -> None:
    assert distribute_by_ratio(1001, [0, 0, 0, 0]) == [250, 250, 250, 251]


def test_rebalance_spreads_remainder_over_others() -> None:
    shares = [
        {"employee_id": "alice", "name": "Alice", "amount_cents": 5000},
        {"employee_id": "bob", "name": "Bob", "amount_cents": 5000},
    ]
    rebalanced = rebalance_allocations(10000, shares, "alice", 8000)
    assert _by_id(rebalanced)["alice"]["amount_cents"] == 8000
    assert _by_id(rebalanced)["bob"]["amount_cents"] == 2000
    assert shares[0]["amount_cents"] == 5000


def test_rebalance_single_participant_gets_total() -> None:
    shares = [{"employee_id": "alice", "name": "Alice", "amount_cents": 100}]
    assert rebalance_allocations(10000, shares, "alice", 400)[0]["amount_cents"] == 10000


def test_rebalance_rejects_unknown_employee() -> None:
    with pytest.raises(ValueError):
        rebalance_allocations(100, [{"employee_id": "a", "amount_cents": 100}], "zed", 10)


def test_contributions_round_half_up() -> None:
    result = calculate_percentage_contributions(
        [_server("s1", "Maria", 20000), _server("s2", "John", 15000)],
        [_pool("p1", "Dish", 5, "hours", ["d1"])],
    )
    assert result == [
        {"server_id": "s1", "pool_id": "p1", "amount_cents": 1000},
        {"server_id": "s2", "pool_id": "p1", "amount_cents": 750},
    ]
    rounded = calculate_percentage_contributions([_server("s1", "Maria", 333)], [_pool("p1", "Pool", 5, "hours", ["d1"])])
    assert rounded[0]["amount_cents"] == 17


def test_refunds_sum_to_pool_total() -> None:
    contributions = [{"server_id": sid, "pool_id": "p1", "amount_cents": 333} for sid in ("s1", "s2", "s3")]
    refunds = calculate_pool_refunds("p1", contributions, 999)
    assert sum(item["refund_cents"] for item in refunds) == 999


def test_one_funded_pool_and_one_refunded_pool() -> None:
    result = calculate_percentage_pool_allocations(
        [_server("s1", "Maria", 20000), _server("s2", "John", 15000)],
        [
            _pool("p1", "Dishwashers", 5, "hours", ["d1", "d2"]),
            _pool("p2", "FOH", 3, "even", ["f1", "f2"]),
        ],
        [_worker("d1", "Dishwasher A", 6)],
    )

    servers = _by_id(result["server_results"])
    assert servers["s1"]["retained_amount_cents"] == 19000
    assert servers["s1"]["refunded_amount_cents"] == 600
    assert servers["s2"]["retained_amount_cents"] == 14250
    assert servers["s2"]["refunded_amount_cents"] == 450

    pools = {item["pool_id"]: item for item in result["pool_results"]}
    assert (pools["p1"]["total_contributed"], pools["p1"]["total_distributed"]) == (1750, 1750)
    assert (pools["p2"]["total_contributed"], pools["p2"]["total_refunded"]) == (1050, 1050)
    assert pools["p2"]["shares"] == []

    items = _by_id(result["split_items"])
    assert items["d1"]["amount_cents"] == 1750
    assert [item["employee_id"] for item in result["split_items"]] == ["s1", "s2", "d1"]
    assert sum(item["amount_cents"] for item in result["split_items"]) == 35000


def test_all_pools_empty_servers_keep_everything() -> None:
    result = calculate_percentage_pool_allocations(
        [_server("s1", "Maria", 10000)],
        [_pool("p1", "Dish", 5, "hours", ["d1"])],
        [],
    )
    assert result["server_results"][0]["refunded_amount_cents"] == 500
    assert result["split_items"] == [{"employee_id": "s1", "name": "Maria", "amount_cents": 10000}]


def test_server_who_is_also_recipient_is_merged() -> None:
    result = calculate_percentage_pool_allocations(
        [_server("s1", "Maria", 10000)],
        [_pool("p1", "FOH", 5, "even", ["s1", "f1"])],
        [_worker("s1", "Maria", 8), _worker("f1", "Host", 8)],
    )
    items = _by_id(result["split_items"])
    assert len(result["split_items"]) == 2
    assert items["s1"]["amount_cents"] == 9750
    assert items["f1"]["amount_cents"] == 250


def test_hours_and_role_pools() -> None:
    by_hours = calculate_percentage_pool_allocations(
        [_server("s1", "Maria", 10000)],
        [_pool("p1", "Dish", 10, "hours", ["d1", "d2"])],
        [_worker("d1", "A", 6), _worker("d2", "B", 4)],
    )
    assert _by_id(by_hours["split_items"])["d1"]["amount_cents"] == 600
    assert _by_id(by_hours["split_items"])["d2"]["amount_cents"] == 400

    by_role = calculate_percentage_pool_allocations(
        [_server("s1", "Maria", 10000)],
        [_pool("p1", "Kitchen", 10, "role", ["k1", "k2"], {"Chef": 3, "Prep": 1})],
        [_worker("k1", "Chef Kim", 8, "Chef"), _worker("k2", "Prep Pat", 8, "Prep")],
    )
    assert _by_id(by_role["split_items"])["k1"]["amount_cents"] == 750
    assert _by_id(by_role["split_items"])["k2"]["amount_cents"] == 250


def test_refunds_follow_each_servers_contribution() -> None:
    result = calculate_percentage_pool_allocations(
        [_server("s1", "A", 10000), _server("s2", "B", 5000), _server("s3", "New", 0)],
        [_pool("p1", "Dish", 10, "hours", ["d1"])],
        [],
    )
    servers = _by_id(result["server_results"])
    assert servers["s1"]["refunded_amount_cents"] == 1000
    assert servers["s2"]["refunded_amount_cents"] == 500
    assert servers["s3"]["retained_amount_cents"] == 0


def test_total_is_preserved_with_awkward_rounding() -> None:
    result = calculate_percentage_pool_allocations(
        [_server("s1", "A", 3333), _server("s2", "B", 6667)],
        [_pool("p1", "Pool", 7, "even", ["d1", "d2", "d3"])],
        [_worker("d1", "D1", 4), _worker("d2", "D2", 4), _worker("d3", "D3", 4)],
    )
    assert sum(item["amount_cents"] for item in result["split_items"]) == 10000


def test_pool_definition_validation() -> None:
    pool = parse_contribution_pool(
        {"id": "p1", "contribution_percentage": "2.5", "share_method": "ROLE", "role_weights": {"Chef": 2}}
    )
    assert pool.contribution_percentage == Decimal("2.5")
    assert pool.share_method is ShareMethod.ROLE
    assert pool.name == "p1"
    for bad in (
        {"id": "p1", "contributionPercentage": 0},
        {"id": "p1", "contributionPercentage": 101},
        {"id": "p1", "contributionPercentage": 5, "roleWeights": {"Chef": -1}},
        {"id": "p1", "contributionPercentage": 5, "shareMethod": "seniority"},
        {"contributionPercentage": 5},
    ):
        with pytest.raises(ValueError):
            parse_contribution_pool(bad)


def test_filter_tip_eligible() -> None:
    employees = [
        {"id": 1, "status": "active", "compensation_type": "hourly"},
        {"id": 2, "status": "inactive", "compensation_type": "hourly"},
        {"id": 3, "status": "active", "compensation_type": "salary"},
        {"id": 4, "status": "active", "compensation_type": "hourly", "tip_eligible": False},
        {"id": 5, "status": "active"},
    ]
    assert [employee["id"] for employee in filter_tip_eligible(employees)] == [1, 5]


def test_collect_pool_workers_sums_net_hours() -> None:
    start = datetime.datetime(2024, 4, 1, 16, 0, tzinfo=UTC)
    shifts = [
        {"employee_id": 1, "start_time": start, "end_time": start + datetime.timedelta(hours=6), "break_minutes": 30, "status": "scheduled"},
        {"employee_id": 1, "start_time": start, "end_time": start + datetime.timedelta(hours=2), "break_minutes": 0, "status": "cancelled"},
        {"employee_id": 2, "start_time": start, "end_time": start + datetime.timedelta(hours=4), "break_minutes": 0, "status": "scheduled"},
    ]
    employees = [
        {"id": 1, "full_name": "Dana", "roles": "Dish, Prep", "status": "active"},
        {"id": 2, "full_name": "Lee", "roles": "Manager", "status": "active", "compensation_type": "salary"},
    ]
    assert collect_pool_workers(shifts, employees) == [
        {"employee_id": 1, "name": "Dana", "hours_worked": 5.5, "role": "Dish"}
    ]


def test_currency_formatting() -> None:
    assert format_currency_from_cents(0) == "$0.00"
    assert format_currency_from_cents(1234567) == "$12,345.67"
    assert format_currency_from_cents(-250) == "-$2.50"


def test_full_pool_splits_server_earnings_over_workers() -> None:
    result = allocate_tips(
        "full_pool",
        [_worker("d1", "A", 6), _worker("d2", "B", 4)],
        servers=[_server("s1", "Maria", 6000), _server("s2", "John", 4001)],
    )
    assert result["pooling_model"] == "full_pool"
    assert result["total_cents"] == 10001
    assert _amounts(result["split_items"]) == [6001, 4000]


def test_full_pool_by_role_with_explicit_total() -> None:
    result = allocate_tips(
        PoolingModel.FULL_POOL,
        [_worker("k1", "Kim", 8, "Chef"), _worker("k2", "Pat", 8, "Prep")],
        total_cents=1000,
        share_method="role",
        role_weights={"Chef": 3, "Prep": 1},
    )
    assert _amounts(result["split_items"]) == [750, 250]


def test_percentage_model_uses_contribution_pools() -> None:
    result = allocate_tips(
        "percentage_contribution",
        [_worker("d1", "Dishwasher", 6)],
        servers=[_server("s1", "Maria", 10000)],
        pools=[_pool("p1", "Dish", 5, "hours", ["d1"])],
    )
    assert result["pooling_model"] == "percentage_contribution"
    assert _by_id(result["split_items"])["d1"]["amount_cents"] == 500
    assert result["server_results"][0]["retained_amount_cents"] == 9500


def test_unknown_pooling_model_is_rejected() -> None:
    with pytest.raises(ValueError):
        allocate_tips("tip_jar", [])
