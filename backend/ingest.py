"""
Dedup/Ingest Stage: turns one page of raw commerce contacts into local rows.

For each record in page order:
    1. reject when the external id or email is missing, or the email domain is excluded
    2. existing contact → incremental: stop; full: skip
       (rows inserted earlier by this same job are skipped without stopping)
    3. insert the contact; an insert failure is logged and the record skipped
    4. for each new contact with a tax id: fetch orders, upsert them, recompute aggregates

Order failures for one contact never abort the page.
"""

import logging
from typing import Optional

from job_status import SyncMode
from models import IngestResult, SyncJob, SyncSettings, parse_timestamp

logger = logging.getLogger(__name__)

PERSON_TYPES = {1: "Individual", 2: "Organization"}


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def map_contact(raw: dict, job_id: str = None) -> dict:
    """Commerce contact → contacts row."""
    phone = None
    nested = raw.get("pessoaContato") or []
    if nested and isinstance(nested[0], dict):
        phone = _clean(nested[0].get("contato"))

    try:
        person_type = PERSON_TYPES.get(int(raw.get("tipo")))
    except (TypeError, ValueError):
        person_type = None

    row = {
        "external_id": _clean(raw.get("id")),
        "name": _clean(raw.get("nome")) or "",
        "email": _clean(raw.get("email")),
        "tax_id": _clean(raw.get("cpfCnpj")),
        "person_type": person_type,
        "gender": _clean(raw.get("sexo")),
        "phone": phone,
        "purchase_count": 0,
        "total_spent": 0,
    }
    if job_id:
        row["imported_by_job"] = job_id
    return row


def map_order(raw: dict, contact_id: int) -> Optional[dict]:
    """Commerce order → orders row. None when the order carries no id."""
    external_order_id = _clean(raw.get("id"))
    if not external_order_id:
        return None
    try:
        amount = round(float(raw.get("valorTotal") or 0), 2)
    except (TypeError, ValueError):
        amount = 0.0
    order_date = parse_timestamp(raw.get("dataHora"))
    return {
        "contact_id": contact_id,
        "external_order_id": external_order_id,
        "amount": amount,
        "status_text": _clean(raw.get("pedidoSituacaoDescricao")) or "",
        "status_code": raw.get("pedidoSituacaoId"),
        "order_date": order_date.isoformat() if order_date else None,
    }


class IngestStage:
    def __init__(self, store, commerce):
        self.store = store
        self.commerce = commerce

    async def ingest_page(
        self, job: SyncJob, items: list[dict], mode: str, settings: SyncSettings, max_new: int = None
    ) -> IngestResult:
        """
        Process one page. `max_new` caps inserts so a record limit is never overshot;
        hitting it sets `stop`.
        """
        result = IngestResult()

        candidates = []
        for raw in items:
            external_id = _clean(raw.get("id"))
            email = _clean(raw.get("email"))
            if not external_id or not email:
                result.rejected += 1
                result.logs.append(f"  - Rejected record {external_id or '?'}: missing id or email.")
                continue
            if settings.is_excluded(email):
                result.rejected += 1
                result.logs.append(f"  - Rejected {email}: excluded domain.")
                continue
            candidates.append((external_id, raw))

        existing = await self.store.find_existing_contacts([eid for eid, _ in candidates])

        to_insert = []
        queued = set()
        for external_id, raw in candidates:
            if external_id in queued:
                continue
            if external_id in existing:
                if existing[external_id] == job.id:
                    # Inserted by this job on an earlier attempt at this page
                    continue
                result.skipped_existing += 1
                if mode == SyncMode.INCREMENTAL:
                    result.stop = True
                    result.logs.append(f"  - Contact {external_id} already imported; incremental walk stops here.")
                    break
                continue
            queued.add(external_id)
            to_insert.append(raw)

        inserted = []
        for raw in to_insert:
            if max_new is not None and len(inserted) >= max_new:
                result.stop = True
                break
            row = map_contact(raw, job_id=job.id)
            try:
                saved = await self.store.insert_contact(row)
            except Exception as e:
                logger.warning(f"Job {job.id}: insert failed for contact {row['external_id']}: {e}")
                result.logs.append(f"  - ERROR inserting contact {row['external_id']}: {e}")
                continue
            inserted.append(saved)

        result.new_contacts = len(inserted)
        result.inserted_ids = [c["id"] for c in inserted]
        if max_new is not None and result.new_contacts >= max_new:
            result.stop = True

        for contact in inserted:
            result.orders_upserted += await self._sync_orders(job, contact, result.logs)

        result.logs.append(
            f"  - {result.new_contacts} new, {result.skipped_existing} already imported, "
            f"{result.rejected} rejected, {result.orders_upserted} orders stored."
        )
        return result

    async def _sync_orders(self, job: SyncJob, contact: dict, logs: list[str]) -> int:
        """Fetch and store one new contact's orders. Returns how many were upserted."""
        tax_id = contact.get("tax_id")
        if not tax_id:
            return 0
        try:
            raw_orders = await self.commerce.list_orders(tax_id)
        except Exception as e:
            logger.warning(f"Job {job.id}: order fetch failed for contact {contact['id']}: {e}")
            logs.append(f"  - WARNING: order fetch failed for {tax_id}: {e}")
            return 0

        rows = [r for r in (map_order(o, contact["id"]) for o in raw_orders) if r]
        if not rows:
            return 0
        try:
            count = await self.store.upsert_orders(rows)
            await self.store.recompute_contact_aggregates(contact["id"])
        except Exception as e:
            logger.warning(f"Job {job.id}: order upsert failed for contact {contact['id']}: {e}")
            logs.append(f"  - WARNING: could not store orders for {tax_id}: {e}")
            return 0
        return count
