from __future__ import annotations

import copy
import datetime
import logging
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from database import (
    DATABASE_URL,
    DEFAULT_STORE_TIMEOUT_SECONDS,
    create_session_factory,
    create_store_engine,
    get_active_policy,
    get_policies,
    init_database,
    upsert_policy,
)
from overtime import OvertimeRules
from tip_pooling import ContributionPool, parse_contribution_pool

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc
DEFAULT_POLICY_NAME = "Default Policy"
DEFAULT_MAX_OCCURRENCES = 365
POOLING_MODELS = {"full_pool", "percentage_contribution"}
SHARE_METHODS = {"hours", "role", "even"}

BASELINE_POLICY: Dict[str, Any] = {
    "overtime": {
        "enabled": True,
        "daily_threshold_minutes": 480,
        "weekly_threshold_minutes": 2400,
    },
    "schedule": {
        "timezone": "UTC",
    },
    "recurrence": {
        "max_occurrences": DEFAULT_MAX_OCCURRENCES,
    },
    "store": {
        "timeout_seconds": DEFAULT_STORE_TIMEOUT_SECONDS,
    },
    "tip_pooling": {
        "pooling_model": "full_pool",
        "share_method": "hours",
        "role_weights": {},
        "pools": [],
    },
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _coerce_int(value: Any, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def _normalize_policy(policy: Dict) -> Dict:
    """Fill defaults and coerce stored values so runtime matches code expectations."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(BASELINE_POLICY, policy)
    defaults = BASELINE_POLICY

    overtime_cfg = normalized["overtime"] if isinstance(normalized.get("overtime"), dict) else {}
    overtime_cfg["enabled"] = bool(overtime_cfg.get("enabled", True))
    for key in ("daily_threshold_minutes", "weekly_threshold_minutes"):
        overtime_cfg[key] = _coerce_int(overtime_cfg.get(key), defaults["overtime"][key])
    normalized["overtime"] = overtime_cfg

    schedule_cfg = normalized["schedule"] if isinstance(normalized.get("schedule"), dict) else {}
    tz_name = schedule_cfg.get("timezone")
    schedule_cfg["timezone"] = tz_name if isinstance(tz_name, str) and tz_name.strip() else "UTC"
    normalized["schedule"] = schedule_cfg

    recurrence_cfg = normalized["recurrence"] if isinstance(normalized.get("recurrence"), dict) else {}
    recurrence_cfg["max_occurrences"] = _coerce_int(
        recurrence_cfg.get("max_occurrences"), DEFAULT_MAX_OCCURRENCES, minimum=1
    )
    normalized["recurrence"] = recurrence_cfg

    store_cfg = normalized["store"] if isinstance(normalized.get("store"), dict) else {}
    try:
        store_cfg["timeout_seconds"] = max(0.0, float(store_cfg.get("timeout_seconds")))
    except (TypeError, ValueError):
        store_cfg["timeout_seconds"] = DEFAULT_STORE_TIMEOUT_SECONDS
    normalized["store"] = store_cfg

    tip_cfg = normalized["tip_pooling"] if isinstance(normalized.get("tip_pooling"), dict) else {}
    if tip_cfg.get("pooling_model") not in POOLING_MODELS:
        tip_cfg["pooling_model"] = "full_pool"
    if tip_cfg.get("share_method") not in SHARE_METHODS:
        tip_cfg["share_method"] = "hours"
    if not isinstance(tip_cfg.get("role_weights"), dict):
        tip_cfg["role_weights"] = {}
    if not isinstance(tip_cfg.get("pools"), list):
        tip_cfg["pools"] = []
    normalized["tip_pooling"] = tip_cfg
    return normalized


def overtime_rules(policy: Dict) -> OvertimeRules:
    cfg = _normalize_policy(policy)["overtime"]
    return OvertimeRules(
        enabled=cfg["enabled"],
        daily_threshold_minutes=cfg["daily_threshold_minutes"],
        weekly_threshold_minutes=cfg["weekly_threshold_minutes"],
    )


def schedule_timezone(policy: Dict) -> datetime.tzinfo:
    name = _normalize_policy(policy)["schedule"]["timezone"]
    if name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown schedule timezone %r; falling back to UTC", name)
        return UTC


def recurrence_limit(policy: Dict) -> int:
    return _normalize_policy(policy)["recurrence"]["max_occurrences"]


def store_timeout(policy: Dict) -> float:
    return _normalize_policy(policy)["store"]["timeout_seconds"]


def contribution_pools(policy: Dict) -> List[ContributionPool]:
    """Typed pool configuration; malformed entries are rejected with ``ValueError``."""
    pools = _normalize_policy(policy)["tip_pooling"]["pools"]
    return [parse_contribution_pool(entry) for entry in pools]


def build_default_policy() -> Dict[str, Any]:
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session) -> None:
    """Seed the baseline policy when the store has none."""
    if get_policies(session):
        return
    upsert_policy(session, DEFAULT_POLICY_NAME, build_default_policy(), edited_by="system")
    logger.info("Seeded default scheduling policy")


def tip_pooling_settings(policy: Dict) -> Dict[str, Any]:
    cfg = _normalize_policy(policy)["tip_pooling"]
    return {
        "pooling_model": cfg["pooling_model"],
        "share_method": cfg["share_method"],
        "role_weights": dict(cfg["role_weights"]),
        "pools": contribution_pools(policy),
    }


def open_store(url: str = DATABASE_URL, *, policy: Optional[Dict] = None):
    """Create the store schema, seed the baseline policy and return a session factory.

    Connections wait up to ``store.timeout_seconds`` on a busy store. Without an
    explicit ``policy`` the stored one decides, which may reopen the engine once.
    """
    opened_with = DEFAULT_STORE_TIMEOUT_SECONDS if policy is None else store_timeout(policy)
    engine = create_store_engine(url, timeout_seconds=opened_with)
    init_database(engine)
    factory = create_session_factory(engine)
    with factory() as session:
        ensure_default_policy(session)
        timeout = store_timeout(policy if policy is not None else load_active_policy(session))
    if timeout == opened_with:
        return factory
    engine.dispose()
    logger.info("Reopening shift store with a %.1fs busy timeout", timeout)
    return create_session_factory(create_store_engine(url, timeout_seconds=timeout))
