"""Calendar sync schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, model_validator


class SyncFailure(BaseModel):
    item: str  # external event id or "slot:<id>"
    reason: str


class SyncSummary(BaseModel):
    """Outcome of one import/export/sync run; failures never abort the run"""

    imported: int = 0
    exported: int = 0
    conflicts: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[SyncFailure] = []

    def record_failure(self, item: str, reason: str) -> None:
        self.failed += 1
        self.failures.append(SyncFailure(item=item, reason=reason))

    def merge(self, other: "SyncSummary") -> "SyncSummary":
        return SyncSummary(
            imported=self.imported + other.imported,
            exported=self.exported + other.exported,
            conflicts=self.conflicts + other.conflicts,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            failures=[*self.failures, *other.failures],
        )


class SyncRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    credential_ref: Optional[str] = None  # "doctor:<id>" / "clinic:<id>"; resolved from the doctor when omitted

    @model_validator(mode="after")
    def validate_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ConnectCallbackRequest(BaseModel):
    code: str
    owner: Optional[str] = None


class CalendarStatusResponse(BaseModel):
    connected: bool
    owner_id: str
    account_email: Optional[str] = None
    calendar_id: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None


class MeetingLinkResponse(BaseModel):
    appointment_id: int
    meet_link: str
    event_id: Optional[str] = None
    created: bool


class DoctorSyncResult(BaseModel):
    doctor: Union[int, str]
    summary: Optional[SyncSummary] = None
    error: Optional[str] = None
