"""
Order refresh stages.

orders:  re-read non-final stored orders from the commerce API and store status changes.
history: re-list every order of contacts not processed within the refresh window, so
         orders placed after a contact was first imported are stored too.

Contacts whose orders changed get last_processed_at stamped so the reconcile
stage pushes their new status tag downstream.
"""

import logging
from datetime import datetime, timedelta

import config
from ingest import map_order
from models import RefreshResult, utc_now

logger = logging.getLogger(__name__)


class OrderRefresher:
    def __init__(self, store, commerce, batch_size: int = None, history_max_age_hours: int = None):
        self.store = store
        self.commerce = commerce
        self.batch_size = batch_size or config.ORDER_REFRESH_BATCH_SIZE
        self.history_max_age_hours = (
            history_max_age_hours if history_max_age_hours is not None else config.ORDER_HISTORY_MAX_AGE_HOURS
        )

    async def refresh_batch(self, after_id: int = 0) -> RefreshResult:
        """Refresh up to `batch_size` open orders with local id > after_id."""
        result = RefreshResult(last_id=after_id)
        orders = await self.store.open_orders(after_id=after_id, limit=self.batch_size)
        touched_contacts = set()

        for order in orders:
            result.checked += 1
            result.last_id = order["id"]
            external_id = order["external_order_id"]
            try:
                detail = await self.commerce.get_order(external_id)
            except Exception as e:
                result.failed += 1
                logger.warning(f"Order {external_id} refresh failed: {e}")
                result.logs.append(f"  - WARNING: could not refresh order {external_id}: {e}")
                continue
            if not detail:
                result.failed += 1
                result.logs.append(f"  - WARNING: no data returned for order {external_id}.")
                continue

            new_status = detail.get("pedidoSituacaoDescricao")
            if new_status and new_status != order.get("status_text"):
                await self.store.update_order_status(order["id"], new_status, detail.get("pedidoSituacaoId"))
                result.updated += 1
                touched_contacts.add(order["contact_id"])

        if touched_contacts:
            await self.store.touch_contacts(sorted(touched_contacts))

        result.has_more = len(orders) >= self.batch_size
        result.logs.append(
            f"  - Checked {result.checked} open orders: {result.updated} status changes, {result.failed} failures."
        )
        return result

    async def refresh_history(self, created_before: datetime, after_id: int = 0) -> RefreshResult:
        """
        Re-list the orders of up to `batch_size` contacts with local id > after_id.

        Only contacts created before `created_before` (the job start) qualify: contacts
        the running job inserted had their orders fetched by the ingest stage.
        `updated` counts contacts whose purchase totals changed.
        """
        result = RefreshResult(last_id=after_id)
        stale_before = utc_now() - timedelta(hours=self.history_max_age_hours)
        contacts = await self.store.stale_order_histories(
            stale_before.isoformat(), created_before.isoformat(), after_id, self.batch_size
        )
        stored = 0

        for contact in contacts:
            result.checked += 1
            result.last_id = contact["id"]
            tax_id = contact["tax_id"]
            try:
                raw_orders = await self.commerce.list_orders(tax_id)
            except Exception as e:
                result.failed += 1
                logger.warning(f"Order history for contact {contact['id']} failed: {e}")
                result.logs.append(f"  - WARNING: could not list orders for {tax_id}: {e}")
                continue

            rows = [r for r in (map_order(o, contact["id"]) for o in raw_orders) if r]
            try:
                if rows:
                    stored += await self.store.upsert_orders(rows)
                # Also stamps last_processed_at, which takes the contact out of the window
                purchase_count, total_spent = await self.store.recompute_contact_aggregates(contact["id"])
            except Exception as e:
                result.failed += 1
                logger.warning(f"Order history store for contact {contact['id']} failed: {e}")
                result.logs.append(f"  - WARNING: could not store orders for {tax_id}: {e}")
                continue

            before = (int(contact.get("purchase_count") or 0), round(float(contact.get("total_spent") or 0), 2))
            if (purchase_count, total_spent) != before:
                result.updated += 1

        result.has_more = len(contacts) >= self.batch_size
        result.logs.append(
            f"  - Order history of {result.checked} contacts re-listed: {stored} orders stored, "
            f"{result.updated} contacts changed, {result.failed} failures."
        )
        return result
