"""
Health data persistence gateway

Every call opens its own session, so concurrent provider pipelines never share
one. Writes use INSERT ... ON CONFLICT so overlapping sync windows and
concurrent callback/sync writes converge on one row per natural key.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vitalis.database import SessionLocal
from vitalis.models import DeviceConnection, HealthRecord, User
from vitalis.services.errors import PersistenceError
from vitalis.services.sync_types import (
    DeviceConnectionStatus,
    NormalizedHealthRecord,
    ProviderId,
    ensure_utc,
)

logger = logging.getLogger(__name__)


def dialect_insert(session: Session, table):
    """Dialect-specific INSERT supporting ON CONFLICT (PostgreSQL, SQLite)."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise PersistenceError(f"Unsupported database dialect: {dialect}")


class HealthDataGateway:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _reading(self, what: str) -> Iterator[Session]:
        """Read-only session; driver errors surface as PersistenceError."""
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Failed to read {what}: {type(e).__name__}")
            raise PersistenceError(f"Read of {what} failed: {type(e).__name__}") from e

    def upsert_health_records(self, records: Iterable[NormalizedHealthRecord]) -> int:
        """Insert records, skipping natural-key duplicates. Returns rows inserted."""
        records = list(records)
        if not records:
            return 0

        session = self._session_factory()
        try:
            inserted = 0
            for record in records:
                stmt = dialect_insert(session, HealthRecord.__table__).values(
                    user_id=record.user_id,
                    provider=record.source.value,
                    metric_type=record.metric_type.value,
                    value=record.value,
                    unit=record.unit,
                    recorded_at=ensure_utc(record.timestamp),
                    confidence=record.confidence,
                ).on_conflict_do_nothing(
                    index_elements=["user_id", "provider", "metric_type", "recorded_at"]
                )
                result = session.execute(stmt)
                inserted += max(result.rowcount or 0, 0)
            session.commit()
            return inserted
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to persist {len(records)} health records: {type(e).__name__}")
            raise PersistenceError(f"Health record write failed: {type(e).__name__}") from e
        finally:
            session.close()

    def upsert_device_connection(self, user_id: str, provider: ProviderId, status: DeviceConnectionStatus) -> None:
        """Create or update the connection row; ``None`` fields keep their stored value."""
        fields: Dict[str, Any] = {"is_connected": status.is_connected}
        for name in (
            "last_sync_at",
            "last_sync_status",
            "last_error",
            "last_records_processed",
            "device_name",
            "manufacturer",
            "device_metadata",
        ):
            value = getattr(status, name)
            if value is not None:
                fields[name] = value

        if status.last_sync_status == "success":
            fields["last_error"] = None

        session = self._session_factory()
        try:
            stmt = dialect_insert(session, DeviceConnection.__table__).values(
                user_id=user_id, provider=provider.value, **fields
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "provider"],
                set_={**fields, "updated_at": func.now()},
            )
            session.execute(stmt)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to update {provider.value} connection for user {user_id}: {type(e).__name__}")
            raise PersistenceError(f"Device connection write failed: {type(e).__name__}") from e
        finally:
            session.close()

    def get_device_connection(self, user_id: str, provider: ProviderId) -> Optional[DeviceConnection]:
        with self._reading("device connection") as session:
            return session.execute(
                select(DeviceConnection).where(
                    DeviceConnection.user_id == user_id,
                    DeviceConnection.provider == provider.value,
                )
            ).scalar_one_or_none()

    def get_device_connections(self, user_id: str) -> List[DeviceConnection]:
        with self._reading("device connections") as session:
            return list(
                session.execute(
                    select(DeviceConnection)
                    .where(DeviceConnection.user_id == user_id)
                    .order_by(DeviceConnection.provider)
                ).scalars()
            )

    def list_connected_providers(self, user_id: str) -> List[ProviderId]:
        with self._reading("connected providers") as session:
            names = session.execute(
                select(DeviceConnection.provider).where(
                    DeviceConnection.user_id == user_id,
                    DeviceConnection.is_connected.is_(True),
                )
            ).scalars()

            providers = []
            for name in names:
                try:
                    providers.append(ProviderId(name))
                except ValueError:
                    logger.warning(f"Ignoring connection for unknown provider '{name}'")
            return providers

    def list_users_with_connections(self) -> List[str]:
        with self._reading("connected users") as session:
            return list(
                session.execute(
                    select(DeviceConnection.user_id)
                    .where(DeviceConnection.is_connected.is_(True))
                    .distinct()
                    .order_by(DeviceConnection.user_id)
                ).scalars()
            )

    def user_exists(self, user_id: str) -> bool:
        with self._reading("user") as session:
            return session.get(User, user_id) is not None

    def count_health_records(self, user_id: str, provider: Optional[ProviderId] = None) -> int:
        with self._reading("health record count") as session:
            query = select(func.count(HealthRecord.id)).where(HealthRecord.user_id == user_id)
            if provider is not None:
                query = query.where(HealthRecord.provider == provider.value)
            return session.execute(query).scalar_one()
