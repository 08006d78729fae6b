"""
Pydantic schemas for the health sync API.

Wire format is camelCase; Python attributes are snake_case.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from vitalis.services.sync_types import MetricType, ProviderId, SyncResult, ensure_utc


class SyncRequest(BaseModel):
    providers: Optional[List[ProviderId]] = None
    metrics: Optional[List[MetricType]] = None
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    force_sync: bool = Field(True, alias="forceSync")

    @model_validator(mode="after")
    def check_range(self):
        # Naive timestamps are UTC
        self.start_date = ensure_utc(self.start_date)
        self.end_date = ensure_utc(self.end_date)
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            raise ValueError("startDate must be before endDate")
        return self

    class Config:
        populate_by_name = True


class ProviderSyncResult(BaseModel):
    success: bool
    records_processed: int = Field(0, alias="recordsProcessed")
    records_inserted: int = Field(0, alias="recordsInserted")
    records_dropped: int = Field(0, alias="recordsDropped")
    error: Optional[str] = None
    message: Optional[str] = None
    skipped: bool = False

    class Config:
        populate_by_name = True

    @classmethod
    def from_result(cls, result: SyncResult) -> "ProviderSyncResult":
        return cls(
            success=result.success,
            records_processed=result.records_processed,
            records_inserted=result.records_inserted,
            records_dropped=result.records_dropped,
            error=result.error,
            message=result.message,
            skipped=result.skipped,
        )


class SyncSummary(BaseModel):
    total_records: int = Field(0, alias="totalRecords")
    successful_syncs: int = Field(0, alias="successfulSyncs")
    total_syncs: int = Field(0, alias="totalSyncs")
    synced_sources: List[str] = Field(default_factory=list, alias="syncedSources")
    failed_sources: List[str] = Field(default_factory=list, alias="failedSources")

    class Config:
        populate_by_name = True

    @classmethod
    def from_results(cls, results: Dict[ProviderId, SyncResult]) -> "SyncSummary":
        return cls(
            total_records=sum(r.records_processed for r in results.values()),
            successful_syncs=sum(1 for r in results.values() if r.success),
            total_syncs=len(results),
            synced_sources=[p.value for p, r in results.items() if r.success],
            failed_sources=[p.value for p, r in results.items() if not r.success],
        )


class SyncResponse(BaseModel):
    success: bool
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")
    results: Dict[str, ProviderSyncResult]
    summary: SyncSummary

    class Config:
        populate_by_name = True


class ConnectionStatusItem(BaseModel):
    provider: str
    display_name: str = Field(..., alias="displayName")
    is_connected: bool = Field(..., alias="isConnected")
    last_sync_at: Optional[datetime] = Field(None, alias="lastSyncAt")
    last_sync_status: Optional[str] = Field(None, alias="lastSyncStatus")
    last_records_processed: int = Field(0, alias="lastRecordsProcessed")
    status_message: str = Field(..., alias="statusMessage")

    class Config:
        populate_by_name = True


class SyncStatusResponse(BaseModel):
    connections: List[ConnectionStatusItem]


class AuthorizationUrlResponse(BaseModel):
    provider: str
    authorization_url: str = Field(..., alias="authorizationUrl")
    expires_at: datetime = Field(..., alias="expiresAt")

    class Config:
        populate_by_name = True


class ConnectResponse(BaseModel):
    success: bool
    provider: str
    external_account_id: Optional[str] = Field(None, alias="externalAccountId")
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class CallbackRequest(BaseModel):
    code: str
    state: str


class DisconnectResponse(BaseModel):
    success: bool
    provider: str
    was_connected: bool = Field(..., alias="wasConnected")

    class Config:
        populate_by_name = True
