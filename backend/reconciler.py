"""
Downstream Reconciler: pushes contacts touched by a job to the marketing platform.

Candidates are contacts created or re-processed since the job was created,
walked in local id order. Each contact carries at most one status tag derived
from its latest order; other status tags are removed in the same payload.
"""

import asyncio
import logging
from typing import Optional

import config
from marketing_client import MarketingAPIError
from models import ReconcileResult, SyncJob, SyncSettings, utc_now
from status_tags import tag_for_status, exclusive_tag_entries

logger = logging.getLogger(__name__)


def split_name(name: Optional[str]) -> tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class DownstreamReconciler:
    def __init__(
        self,
        store,
        marketing,
        identity_field: str = None,
        company_name: str = None,
        search_chunk_size: int = None,
        api_delay: float = None,
    ):
        self.store = store
        self.marketing = marketing
        self.identity_field = identity_field or config.MARKETING_IDENTITY_FIELD
        self.company_name = company_name if company_name is not None else config.MARKETING_COMPANY_NAME
        self.search_chunk_size = search_chunk_size or config.MARKETING_SEARCH_CHUNK_SIZE
        self.api_delay = api_delay if api_delay is not None else config.MARKETING_API_DELAY

    def build_payload(self, contact: dict, tag: Optional[str], current_tags=None) -> dict:
        firstname, lastname = split_name(contact.get("name"))
        payload = {
            "firstname": firstname,
            "lastname": lastname,
            "email": contact["email"],
            self.identity_field: str(contact["external_id"]),
        }
        if self.company_name:
            payload["company"] = self.company_name
        if tag:
            payload["tags"] = exclusive_tag_entries(tag, current_tags)
        return payload

    async def reconcile_batch(self, job: SyncJob, settings: SyncSettings, after_id: int = 0) -> ReconcileResult:
        """Reconcile the next `settings.batch_size` candidates with id > after_id."""
        since = (job.created_at or utc_now()).isoformat()
        contacts = await self.store.candidate_contacts(since, after_id, settings.batch_size)

        result = ReconcileResult(checked=len(contacts), last_id=after_id)
        if not contacts:
            return result
        result.last_id = contacts[-1]["id"]
        result.has_more = len(contacts) >= settings.batch_size

        eligible = []
        for contact in contacts:
            email = contact.get("email")
            if not email:
                result.skipped += 1
                result.logs.append(f"  - Skipped contact {contact['external_id']}: no email.")
            elif settings.is_excluded(email):
                result.skipped += 1
                result.logs.append(f"  - Skipped {email}: excluded domain.")
            else:
                eligible.append(contact)
        if not eligible:
            return result

        statuses = await self.store.latest_order_statuses([c["id"] for c in eligible])
        known, unresolved = await self._lookup([str(c["external_id"]) for c in eligible], result)

        creates, edits = [], []
        for contact in eligible:
            identity = str(contact["external_id"])
            if identity in unresolved:
                result.failed += 1
                continue
            tag = tag_for_status(statuses.get(contact["id"]))
            remote = known.get(identity)
            if remote:
                payload = self.build_payload(contact, tag, remote["tags"])
                payload["id"] = remote["id"]
                edits.append((contact, payload))
            else:
                # A contact that does not exist yet carries no tags
                creates.append((contact, self.build_payload(contact, tag, [])))

        await self._push(creates, result, create=True)
        await self._push(edits, result, create=False)

        result.logs.append(
            f"  - Marketing sync: {result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} failed."
        )
        return result

    async def _lookup(self, identities: list[str], result: ReconcileResult) -> tuple[dict, set]:
        """Search in chunks; a failed chunk falls back to one search per identity."""
        known = {}
        unresolved = set()
        for start in range(0, len(identities), self.search_chunk_size):
            chunk = identities[start:start + self.search_chunk_size]
            try:
                known.update(await self.marketing.search_contacts(chunk))
                continue
            except MarketingAPIError as e:
                logger.warning(f"Marketing chunk search failed ({len(chunk)} ids), retrying one by one: {e}")
                result.logs.append(f"  - WARNING: chunk search failed, searching {len(chunk)} contacts individually.")
            for identity in chunk:
                try:
                    known.update(await self.marketing.search_contacts([identity]))
                except MarketingAPIError as e:
                    unresolved.add(identity)
                    result.logs.append(f"  - ERROR looking up contact {identity}: {e}")
        return known, unresolved

    async def _push(self, items: list[tuple[dict, dict]], result: ReconcileResult, create: bool) -> None:
        if not items:
            return
        payloads = [p for _, p in items]
        action = "create" if create else "update"
        try:
            if create:
                errors = await self.marketing.batch_create(payloads)
            else:
                errors = await self.marketing.batch_edit(payloads)
        except MarketingAPIError as e:
            logger.warning(f"Batch {action} of {len(items)} contacts failed, falling back to single calls: {e}")
            result.logs.append(f"  - WARNING: batch {action} unavailable ({e}); sending contacts one by one.")
            await self._push_individually(items, result, create)
            return

        for index, (contact, _) in enumerate(items):
            if index in errors:
                result.failed += 1
                result.logs.append(f"  - ERROR marketing {action} for {contact['email']}: {errors[index]}")
            elif create:
                result.created += 1
            else:
                result.updated += 1

    async def _push_individually(self, items: list[tuple[dict, dict]], result: ReconcileResult, create: bool) -> None:
        for contact, payload in items:
            try:
                if create:
                    await self.marketing.create_contact(payload)
                    result.created += 1
                else:
                    body = {k: v for k, v in payload.items() if k != "id"}
                    await self.marketing.edit_contact(payload["id"], body)
                    result.updated += 1
            except MarketingAPIError as e:
                result.failed += 1
                result.logs.append(f"  - ERROR marketing sync for {contact['email']}: {e}")
            if self.api_delay:
                await asyncio.sleep(self.api_delay)
