"""
Database connection and tracking data access
"""
import logging
from datetime import datetime, date, timezone
from typing import List, Optional

from sqlalchemy import (
    create_engine, Column, String, Integer, Boolean, DateTime, Date,
    UniqueConstraint,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from arrival_collector.config import get_settings
from arrival_collector.errors import StoreError, SettingsUnavailableError
from arrival_collector.tracking import (
    ArrivalKey,
    ArrivalLogEntry,
    PendingArrival,
    SchedulerSettings,
    TrackingTarget,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class TrackingTargetRow(Base):
    __tablename__ = "tracking_targets"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    vehicle_id = Column(String, nullable=False)
    vehicle_label = Column(String, nullable=False)
    stop_id = Column(String, nullable=False)
    stop_label = Column(String, nullable=False)
    stop_sub_code = Column(String)
    is_active = Column(Boolean, default=True, nullable=False)


class ArrivalLogRow(Base):
    __tablename__ = "arrival_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    vehicle_id = Column(String, nullable=False)
    vehicle_label = Column(String, nullable=False)
    stop_id = Column(String, nullable=False)
    stop_label = Column(String, nullable=False)
    arrived_at = Column(DateTime, nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    vehicle_physical_id = Column(String)


class PendingArrivalRow(Base):
    __tablename__ = "pending_arrivals"
    __table_args__ = (UniqueConstraint("owner_id", "vehicle_id", "stop_id"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    vehicle_id = Column(String, nullable=False)
    stop_id = Column(String, nullable=False)
    vehicle_label = Column(String)
    stop_label = Column(String)
    stop_sub_code = Column(String)
    predicted_seconds = Column(Integer, nullable=False)
    vehicle_physical_id = Column(String)
    updated_at = Column(DateTime, nullable=False)


class SchedulerSettingsRow(Base):
    __tablename__ = "scheduler_settings"
    id = Column(Integer, primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    interval_minutes = Column(Integer, nullable=False)
    start_hour = Column(Integer, nullable=False)
    end_hour = Column(Integer, nullable=False)
    updated_at = Column(DateTime)


class ApiCallCountRow(Base):
    __tablename__ = "api_call_counts"
    call_date = Column(Date, primary_key=True)
    call_count = Column(Integer, nullable=False, default=0)


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine)


settings = get_settings()

# Create engine
engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _to_db_time(ts: datetime) -> datetime:
    """Timestamps are stored as naive UTC; naive inputs are stored unchanged"""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


class TargetRegistry:
    """Read access to tracking targets (plus helpers used by admin scripts and tests)"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _to_target(row: TrackingTargetRow) -> TrackingTarget:
        return TrackingTarget(
            id=row.id,
            owner_id=row.owner_id,
            vehicle_id=row.vehicle_id,
            vehicle_label=row.vehicle_label,
            stop_id=row.stop_id,
            stop_label=row.stop_label,
            stop_sub_code=row.stop_sub_code,
            active=row.is_active,
        )

    def list_active_targets(self) -> List[TrackingTarget]:
        with self._session_factory() as db:
            rows = db.query(TrackingTargetRow).filter(
                TrackingTargetRow.is_active.is_(True)
            ).order_by(TrackingTargetRow.id).all()
            return [self._to_target(r) for r in rows]

    def get_target(self, target_id: str) -> Optional[TrackingTarget]:
        with self._session_factory() as db:
            row = db.get(TrackingTargetRow, target_id)
            return self._to_target(row) if row else None

    def add_target(self, target: TrackingTarget) -> None:
        with self._session_factory() as db:
            db.merge(TrackingTargetRow(
                id=target.id,
                owner_id=target.owner_id,
                vehicle_id=target.vehicle_id,
                vehicle_label=target.vehicle_label,
                stop_id=target.stop_id,
                stop_label=target.stop_label,
                stop_sub_code=target.stop_sub_code,
                is_active=target.active,
            ))
            db.commit()

    def set_active(self, target_id: str, active: bool) -> bool:
        with self._session_factory() as db:
            row = db.get(TrackingTargetRow, target_id)
            if row is None:
                return False
            row.is_active = active
            db.commit()
            return True

    def count_active(self) -> int:
        with self._session_factory() as db:
            return db.query(TrackingTargetRow).filter(
                TrackingTargetRow.is_active.is_(True)
            ).count()


class ArrivalLogStore:
    """Append-only arrival log"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def insert(self, entry: ArrivalLogEntry) -> None:
        try:
            with self._session_factory() as db:
                db.add(ArrivalLogRow(
                    owner_id=entry.owner_id,
                    vehicle_id=entry.vehicle_id,
                    vehicle_label=entry.vehicle_label,
                    stop_id=entry.stop_id,
                    stop_label=entry.stop_label,
                    arrived_at=_to_db_time(entry.arrived_at),
                    day_of_week=entry.day_of_week,
                    vehicle_physical_id=entry.vehicle_physical_id,
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert arrival log: {e}") from e

    def exists_since(self, owner_id: str, vehicle_id: str, stop_id: str, since: datetime) -> bool:
        """Whether any arrival was logged for the pair at or after `since`"""
        with self._session_factory() as db:
            row = db.query(ArrivalLogRow.id).filter(
                ArrivalLogRow.owner_id == owner_id,
                ArrivalLogRow.vehicle_id == vehicle_id,
                ArrivalLogRow.stop_id == stop_id,
                ArrivalLogRow.arrived_at >= _to_db_time(since),
            ).first()
            return row is not None

    def recent(self, owner_id: Optional[str] = None, limit: int = 50) -> List[ArrivalLogEntry]:
        with self._session_factory() as db:
            query = db.query(ArrivalLogRow)
            if owner_id is not None:
                query = query.filter(ArrivalLogRow.owner_id == owner_id)
            rows = query.order_by(ArrivalLogRow.arrived_at.desc()).limit(limit).all()
            return [
                ArrivalLogEntry(
                    owner_id=r.owner_id,
                    vehicle_id=r.vehicle_id,
                    vehicle_label=r.vehicle_label,
                    stop_id=r.stop_id,
                    stop_label=r.stop_label,
                    arrived_at=r.arrived_at,
                    day_of_week=r.day_of_week,
                    vehicle_physical_id=r.vehicle_physical_id,
                )
                for r in rows
            ]


class PendingArrivalStore:
    """Imminent arrivals waiting for confirmation, keyed by (owner, vehicle, stop)"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _filter(db: Session, key: ArrivalKey):
        owner_id, vehicle_id, stop_id = key
        return db.query(PendingArrivalRow).filter(
            PendingArrivalRow.owner_id == owner_id,
            PendingArrivalRow.vehicle_id == vehicle_id,
            PendingArrivalRow.stop_id == stop_id,
        )

    def upsert(self, pending: PendingArrival) -> None:
        with self._session_factory() as db:
            row = self._filter(db, pending.key).first()
            if row is None:
                row = PendingArrivalRow(
                    owner_id=pending.owner_id,
                    vehicle_id=pending.vehicle_id,
                    stop_id=pending.stop_id,
                )
                db.add(row)
            row.vehicle_label = pending.vehicle_label
            row.stop_label = pending.stop_label
            row.stop_sub_code = pending.stop_sub_code
            row.predicted_seconds = pending.predicted_seconds
            row.vehicle_physical_id = pending.vehicle_physical_id
            row.updated_at = _to_db_time(pending.updated_at)
            db.commit()

    def get(self, key: ArrivalKey) -> Optional[PendingArrival]:
        with self._session_factory() as db:
            row = self._filter(db, key).first()
            if row is None:
                return None
            return PendingArrival(
                owner_id=row.owner_id,
                vehicle_id=row.vehicle_id,
                stop_id=row.stop_id,
                predicted_seconds=row.predicted_seconds,
                updated_at=row.updated_at,
                vehicle_physical_id=row.vehicle_physical_id,
                vehicle_label=row.vehicle_label,
                stop_label=row.stop_label,
                stop_sub_code=row.stop_sub_code,
            )

    def delete(self, key: ArrivalKey) -> None:
        with self._session_factory() as db:
            self._filter(db, key).delete(synchronize_session=False)
            db.commit()


class SchedulerSettingsStore:
    """Single-row scheduler settings, read at the start of every scan"""

    ROW_ID = 1

    def __init__(self, session_factory: sessionmaker, defaults: Optional[SchedulerSettings] = None):
        self._session_factory = session_factory
        self._defaults = defaults or SchedulerSettings()

    def read(self) -> SchedulerSettings:
        try:
            with self._session_factory() as db:
                row = db.get(SchedulerSettingsRow, self.ROW_ID)
                if row is None:
                    return SchedulerSettings(**self._defaults.to_dict())
                return SchedulerSettings(
                    enabled=row.enabled,
                    interval_minutes=row.interval_minutes,
                    start_hour=row.start_hour,
                    end_hour=row.end_hour,
                )
        except SQLAlchemyError as e:
            raise SettingsUnavailableError(f"Failed to read scheduler settings: {e}") from e

    def save(self, scheduler_settings: SchedulerSettings) -> None:
        with self._session_factory() as db:
            row = db.get(SchedulerSettingsRow, self.ROW_ID)
            if row is None:
                row = SchedulerSettingsRow(id=self.ROW_ID)
                db.add(row)
            row.enabled = scheduler_settings.enabled
            row.interval_minutes = scheduler_settings.interval_minutes
            row.start_hour = scheduler_settings.start_hour
            row.end_hour = scheduler_settings.end_hour
            row.updated_at = _to_db_time(datetime.now(timezone.utc))
            db.commit()


class ApiCallCounter:
    """Daily count of outbound prediction API calls"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def increment(self, day: Optional[date] = None) -> int:
        """Add one call for the day; safe to call from concurrent threads"""
        day = day or date.today()
        with self._session_factory() as db:
            if not self._bump(db, day):
                try:
                    db.add(ApiCallCountRow(call_date=day, call_count=1))
                    db.commit()
                except IntegrityError:
                    # Another thread created the row first
                    db.rollback()
                    self._bump(db, day)
            return self._count(db, day)

    @staticmethod
    def _bump(db: Session, day: date) -> bool:
        updated = db.query(ApiCallCountRow).filter(
            ApiCallCountRow.call_date == day
        ).update(
            {ApiCallCountRow.call_count: ApiCallCountRow.call_count + 1},
            synchronize_session=False,
        )
        db.commit()
        return updated > 0

    @staticmethod
    def _count(db: Session, day: date) -> int:
        count = db.query(ApiCallCountRow.call_count).filter(
            ApiCallCountRow.call_date == day
        ).scalar()
        return count or 0

    def count_for(self, day: Optional[date] = None) -> int:
        with self._session_factory() as db:
            return self._count(db, day or date.today())
