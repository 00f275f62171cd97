from __future__ import annotations

import datetime
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    and_,
    create_engine,
    or_,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc
DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'schedule.db').as_posix()}"
DATABASE_URL = os.environ.get("SHIFT_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)
DEFAULT_STORE_TIMEOUT_SECONDS = 30.0
SHIFT_STATUS_CHOICES = {"scheduled", "confirmed", "cancelled"}
TIME_OFF_STATUS_CHOICES = {"pending", "approved", "denied"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


class Base(DeclarativeBase):
    """Metadata for every table the scheduling engine reads or writes."""

    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    roles: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    hourly_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    compensation_type: Mapped[str] = mapped_column(String(12), default="hourly", nullable=False)
    tip_eligible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def role_list(self) -> List[str]:
        return [role.strip() for role in (self.roles or "").split(",") if role.strip()]

    @role_list.setter
    def role_list(self, roles: Iterable[str]) -> None:
        self.roles = ", ".join(sorted({role.strip() for role in roles if role.strip()}))


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_pattern_json: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    # Children keep the series key after the parent row is deleted.
    recurrence_parent_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def recurrence_pattern(self) -> Optional[Dict[str, Any]]:
        if not self.recurrence_pattern_json:
            return None
        try:
            value = json.loads(self.recurrence_pattern_json)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None

    @recurrence_pattern.setter
    def recurrence_pattern(self, value: Optional[Dict[str, Any]]) -> None:
        self.recurrence_pattern_json = json.dumps(value) if value else None


class TimeOffRequest(Base):
    __tablename__ = "time_off_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    reason: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SchedulingPolicy(Base):
    __tablename__ = "scheduling_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_scheduling_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Shift")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def create_store_engine(url: str = DATABASE_URL, *, timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS):
    """Build an engine whose driver waits at most ``timeout_seconds`` on a busy store."""
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = float(timeout_seconds)
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


def init_database(engine) -> None:
    if engine.url.drivername.startswith("sqlite") and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(engine)
    logger.debug("Created shift store tables on %s", engine.url)


def create_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def ensure_aware(value: datetime.datetime) -> datetime.datetime:
    """Return ``value`` in UTC; naive values read back from SQLite are already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def series_clause(parent_id: int):
    # A parent detached by a single-shift edit no longer belongs to its old series.
    return or_(
        and_(Shift.id == parent_id, Shift.is_recurring.is_(True)),
        Shift.recurrence_parent_id == parent_id,
    )


def shift_to_dict(shift: Shift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "employee_id": shift.employee_id,
        "start_time": ensure_aware(shift.start_time),
        "end_time": ensure_aware(shift.end_time),
        "break_minutes": shift.break_minutes or 0,
        "position": shift.position or "",
        "notes": shift.notes or "",
        "status": shift.status,
        "locked": bool(shift.locked),
        "is_recurring": bool(shift.is_recurring),
        "recurrence_pattern": shift.recurrence_pattern,
        "recurrence_parent_id": shift.recurrence_parent_id,
    }


def get_shift(session, shift_id: int) -> Shift:
    shift = session.get(Shift, shift_id)
    if not shift:
        raise ValueError(f"Shift with id {shift_id} was not found.")
    return shift


def get_shifts_in_range(
    session,
    start: datetime.datetime,
    end: datetime.datetime,
    *,
    employee_id: Optional[int] = None,
    include_cancelled: bool = True,
) -> List[Shift]:
    """Return shifts whose start falls in ``[start, end)`` ordered by start time."""
    stmt = (
        select(Shift)
        .where(Shift.start_time >= ensure_aware(start), Shift.start_time < ensure_aware(end))
        .order_by(Shift.start_time, Shift.end_time, Shift.id)
    )
    if employee_id is not None:
        stmt = stmt.where(Shift.employee_id == employee_id)
    if not include_cancelled:
        stmt = stmt.where(Shift.status != "cancelled")
    return list(session.scalars(stmt))


def get_shifts_touching_window(
    session,
    employee_id: int,
    window_start: datetime.datetime,
    window_end: datetime.datetime,
) -> List[Shift]:
    """Return the employee's active shifts that start in, or overlap, the window."""
    start = ensure_aware(window_start)
    end = ensure_aware(window_end)
    stmt = (
        select(Shift)
        .where(
            Shift.employee_id == employee_id,
            Shift.status != "cancelled",
            or_(
                (Shift.start_time >= start) & (Shift.start_time < end),
                (Shift.start_time < end) & (Shift.end_time > start),
            ),
        )
        .order_by(Shift.start_time, Shift.id)
    )
    return list(session.scalars(stmt))


def get_series_shifts(session, parent_id: int) -> List[Shift]:
    stmt = select(Shift).where(series_clause(parent_id)).order_by(Shift.start_time, Shift.id)
    return list(session.scalars(stmt))


def get_approved_time_off(
    session,
    employee_id: int,
    *,
    start_date: Optional[datetime.date] = None,
    end_date: Optional[datetime.date] = None,
) -> List[TimeOffRequest]:
    stmt = select(TimeOffRequest).where(
        TimeOffRequest.employee_id == employee_id,
        TimeOffRequest.status == "approved",
    )
    if start_date is not None:
        stmt = stmt.where(TimeOffRequest.end_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(TimeOffRequest.start_date <= end_date)
    return list(session.scalars(stmt.order_by(TimeOffRequest.start_date, TimeOffRequest.id)))


def list_employees(session, only_active: bool = True) -> List[Employee]:
    stmt = select(Employee)
    if only_active:
        stmt = stmt.where(Employee.status == "active")
    return list(session.scalars(stmt.order_by(Employee.full_name.asc())))


def get_policies(session) -> List[SchedulingPolicy]:
    stmt = select(SchedulingPolicy).order_by(SchedulingPolicy.name.asc(), SchedulingPolicy.id.asc())
    return list(session.scalars(stmt))


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> SchedulingPolicy:
    existing: Optional[SchedulingPolicy] = session.execute(
        select(SchedulingPolicy).where(SchedulingPolicy.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = SchedulingPolicy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[SchedulingPolicy]:
    stmt = select(SchedulingPolicy).order_by(SchedulingPolicy.lastEditedAt.desc(), SchedulingPolicy.id.desc())
    return session.scalars(stmt).first()


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Shift",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log
