"""Plain data carriers shared by the sync pipeline."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from job_status import JobStatus, PipelineStage, SyncMode


def utc_now():
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a Supabase timestamptz string (or pass through a datetime)."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ContactPage:
    """One page of raw contacts from the commerce listing."""
    items: list[dict]
    total: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass
class SyncSettings:
    batch_size: int = 50
    excluded_domains: frozenset = frozenset()

    @classmethod
    def from_row(cls, row: Optional[dict], default_batch_size: int = 50) -> "SyncSettings":
        if not row:
            return cls(batch_size=default_batch_size)
        domains = frozenset(
            d.strip().lower() for d in (row.get("excluded_domains") or []) if d and d.strip()
        )
        batch_size = row.get("batch_size") or default_batch_size
        return cls(batch_size=int(batch_size), excluded_domains=domains)

    def is_excluded(self, email: Optional[str]) -> bool:
        if not email or "@" not in email:
            return False
        domain = email.rsplit("@", 1)[1].strip().lower()
        return domain in self.excluded_domains


@dataclass
class SyncJob:
    id: str
    status: str
    mode: str = SyncMode.INCREMENTAL
    stage: str = PipelineStage.INGEST
    attempt: int = 1
    cursor_page: int = 0
    new_contacts_added: int = 0
    orders_updated_count: int = 0
    record_limit: Optional[int] = None
    trigger: str = "manual"
    user_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "SyncJob":
        return cls(
            id=str(row["id"]),
            status=row.get("status") or JobStatus.PENDING,
            mode=row.get("mode") or SyncMode.INCREMENTAL,
            stage=row.get("stage") or PipelineStage.INGEST,
            attempt=row.get("attempt") or 1,
            cursor_page=row.get("cursor_page") or 0,
            new_contacts_added=row.get("new_contacts_added") or 0,
            orders_updated_count=row.get("orders_updated_count") or 0,
            record_limit=row.get("record_limit"),
            trigger=row.get("trigger") or "manual",
            user_id=row.get("user_id"),
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            finished_at=parse_timestamp(row.get("finished_at")),
        )

    @property
    def is_terminal(self) -> bool:
        return JobStatus.is_terminal(self.status)

    def limit_reached(self, new_contacts: int) -> bool:
        return bool(self.record_limit) and new_contacts >= self.record_limit

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "mode": self.mode,
            "stage": self.stage,
            "attempt": self.attempt,
            "cursorPage": self.cursor_page,
            "newContactsAdded": self.new_contacts_added,
            "ordersUpdatedCount": self.orders_updated_count,
            "recordLimit": self.record_limit,
            "trigger": self.trigger,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class StepRequest:
    """
    One unit of queued work: a page (ingest) or a keyset batch (later stages).

    `attempt` is the job run the request belongs to; continuing a job starts a
    new attempt and requests left over from the previous one are dropped.
    """
    job_id: str
    mode: str
    stage: str = PipelineStage.INGEST
    page: int = 1
    after_id: int = 0
    attempt: int = 1


@dataclass
class IngestResult:
    new_contacts: int = 0
    orders_upserted: int = 0
    rejected: int = 0
    skipped_existing: int = 0
    stop: bool = False
    inserted_ids: list = field(default_factory=list)
    logs: list[str] = field(default_factory=list)


@dataclass
class RefreshResult:
    checked: int = 0
    updated: int = 0
    failed: int = 0
    last_id: Optional[int] = None
    has_more: bool = False
    logs: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    checked: int = 0
    last_id: Optional[int] = None
    has_more: bool = False
    logs: list[str] = field(default_factory=list)
