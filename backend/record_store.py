"""
Record Store: local mirror of commerce contacts and orders.

Tables:
    contacts  (unique external_id)
    orders    (unique external_order_id, owned by one contact)
    settings  (singleton row, singleton_key = 1)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import config
from db import run_db
from models import SyncSettings

logger = logging.getLogger(__name__)

CONTACTS_TABLE = "contacts"
ORDERS_TABLE = "orders"
SETTINGS_TABLE = "settings"

# PostgREST caps `in` filters by URL length; stay well below it
IN_FILTER_CHUNK = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordStore:
    """Supabase-backed contact/order mirror used by the ingest, refresh and reconcile stages."""

    def __init__(self, supabase):
        self.supabase = supabase

    # ==================== Settings ====================

    async def get_settings(self) -> SyncSettings:
        result = await run_db(lambda: self.supabase.table(SETTINGS_TABLE).select(
            "batch_size, excluded_domains"
        ).eq("singleton_key", 1).limit(1).execute())
        row = result.data[0] if result.data else None
        return SyncSettings.from_row(row, default_batch_size=config.DEFAULT_BATCH_SIZE)

    # ==================== Contacts ====================

    async def find_existing_contacts(self, external_ids: list[str]) -> dict[str, Optional[str]]:
        """Map external_id → imported_by_job for every id already in the store."""
        found: dict[str, Optional[str]] = {}
        ids = [i for i in dict.fromkeys(external_ids) if i]
        for start in range(0, len(ids), IN_FILTER_CHUNK):
            chunk = ids[start:start + IN_FILTER_CHUNK]
            result = await run_db(lambda c=chunk: self.supabase.table(CONTACTS_TABLE).select(
                "external_id, imported_by_job"
            ).in_("external_id", c).execute())
            for row in result.data or []:
                found[str(row["external_id"])] = row.get("imported_by_job")
        return found

    async def insert_contact(self, row: dict) -> dict:
        """Insert one contact. Raises on constraint violations so the caller can log and skip."""
        result = await run_db(lambda: self.supabase.table(CONTACTS_TABLE).insert(row).execute())
        if not result.data:
            raise RuntimeError(f"Insert returned no row for contact {row.get('external_id')}")
        return result.data[0]

    async def count_contacts(self) -> int:
        result = await run_db(lambda: self.supabase.table(CONTACTS_TABLE).select(
            "id", count="exact"
        ).limit(1).execute())
        return result.count or 0

    async def candidate_contacts(self, since_iso: str, after_id: int, limit: int) -> list[dict]:
        """Contacts created or re-processed since `since_iso`, in id order after `after_id`."""
        result = await run_db(lambda: self.supabase.table(CONTACTS_TABLE).select(
            "id, external_id, name, email"
        ).or_(
            f"created_at.gte.{since_iso},last_processed_at.gte.{since_iso}"
        ).gt("id", after_id).order("id").limit(limit).execute())
        return result.data or []

    async def stale_order_histories(
        self, stale_before_iso: str, created_before_iso: str, after_id: int, limit: int
    ) -> list[dict]:
        """
        Contacts with a tax id whose orders were last processed before `stale_before_iso`
        (or never), created before `created_before_iso`, in id order after `after_id`.
        """
        result = await run_db(lambda: self.supabase.table(CONTACTS_TABLE).select(
            "id, external_id, tax_id, purchase_count, total_spent"
        ).not_.is_("tax_id", "null").lt("created_at", created_before_iso).or_(
            f"last_processed_at.is.null,last_processed_at.lt.{stale_before_iso}"
        ).gt("id", after_id).order("id").limit(limit).execute())
        return result.data or []

    async def touch_contacts(self, contact_ids: list[int]) -> None:
        if not contact_ids:
            return
        now = _now_iso()
        await run_db(lambda: self.supabase.table(CONTACTS_TABLE).update(
            {"last_processed_at": now}
        ).in_("id", list(contact_ids)).execute())

    # ==================== Orders ====================

    async def upsert_orders(self, rows: list[dict]) -> int:
        if not rows:
            return 0
        await run_db(lambda: self.supabase.table(ORDERS_TABLE).upsert(
            rows, on_conflict="external_order_id"
        ).execute())
        return len(rows)

    async def recompute_contact_aggregates(self, contact_id: int) -> tuple[int, float]:
        """Set purchase_count/total_spent from the contact's stored orders."""
        result = await run_db(lambda: self.supabase.table(ORDERS_TABLE).select(
            "amount"
        ).eq("contact_id", contact_id).execute())
        amounts = [float(r.get("amount") or 0) for r in (result.data or [])]
        purchase_count = len(amounts)
        total_spent = round(sum(amounts), 2)
        await run_db(lambda: self.supabase.table(CONTACTS_TABLE).update({
            "purchase_count": purchase_count,
            "total_spent": total_spent,
            "last_processed_at": _now_iso(),
        }).eq("id", contact_id).execute())
        return purchase_count, total_spent

    async def open_orders(self, after_id: int, limit: int) -> list[dict]:
        """Orders whose status is not final, in id order after `after_id`."""
        final = list(config.FINAL_ORDER_STATUSES)
        result = await run_db(lambda: self.supabase.table(ORDERS_TABLE).select(
            "id, contact_id, external_order_id, status_text"
        ).not_.in_("status_text", final).gt("id", after_id).order("id").limit(limit).execute())
        return result.data or []

    async def update_order_status(self, order_id: int, status_text: str, status_code) -> None:
        await run_db(lambda: self.supabase.table(ORDERS_TABLE).update({
            "status_text": status_text,
            "status_code": status_code,
        }).eq("id", order_id).execute())

    async def latest_order_statuses(self, contact_ids: list[int]) -> dict[int, str]:
        """Status text of each contact's most recent order (by order_date)."""
        latest: dict[int, str] = {}
        ids = list(dict.fromkeys(contact_ids))
        for start in range(0, len(ids), IN_FILTER_CHUNK):
            chunk = ids[start:start + IN_FILTER_CHUNK]
            result = await run_db(lambda c=chunk: self.supabase.table(ORDERS_TABLE).select(
                "contact_id, status_text, order_date"
            ).in_("contact_id", c).order("order_date", desc=True).execute())
            for row in result.data or []:
                # Rows arrive newest first, so the first one per contact wins
                latest.setdefault(row["contact_id"], row.get("status_text") or "")
        return latest
