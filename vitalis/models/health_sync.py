from sqlalchemy import (
    Column, String, DateTime, Text, Boolean, Integer, Float, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.sql import func
from vitalis.database import Base


class ProviderCredentialRecord(Base):
    """
    OAuth tokens per (user, provider).
    Disconnect sets disconnected_at; rows are never purged.
    """
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String(40), nullable=False)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String(20), nullable=False, default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)  # space separated
    external_account_id = Column(String, nullable=True)

    disconnected_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_credential_user_provider"),
    )


class DeviceConnection(Base):
    __tablename__ = "device_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String(40), nullable=False)

    is_connected = Column(Boolean, nullable=False, default=True)
    device_name = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    device_metadata = Column(JSON, nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(20), nullable=True)  # success, partial, failed, skipped
    last_error = Column(String(64), nullable=True)
    last_records_processed = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_device_connection_user_provider"),
    )


class HealthRecord(Base):
    __tablename__ = "health_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String(40), nullable=False)
    metric_type = Column(String(40), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String(20), nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    confidence = Column(Float, nullable=False)

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "metric_type", "recorded_at",
            name="uq_health_record_natural_key",
        ),
        Index("ix_health_records_user_metric_time", "user_id", "metric_type", "recorded_at"),
    )
