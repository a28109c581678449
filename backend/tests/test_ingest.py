"""
Ingest Stage Tests
==================
Field mapping, rejection rules, stop/skip behaviour per mode, and order
handling for newly inserted contacts.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import FakeStore, FakeCommerce, raw_contact, raw_order
from ingest import IngestStage, map_contact, map_order
from job_status import JobStatus, SyncMode
from models import SyncJob, SyncSettings


def make_job(job_id="job-1", mode=SyncMode.INCREMENTAL):
    return SyncJob(id=job_id, status=JobStatus.RUNNING, mode=mode)


# ---------------------------------------------------------------------------
# 1. Mapping
# ---------------------------------------------------------------------------

class TestMapContact:

    def test_individual_with_phone_and_gender(self):
        row = map_contact(raw_contact(12, tax_id="123.456.789-00", name="Ana Souza", tipo=1), job_id="job-9")
        assert row["external_id"] == "12"
        assert row["name"] == "Ana Souza"
        assert row["person_type"] == "Individual"
        assert row["phone"] == "55110000012"
        assert row["gender"] == "F"
        assert row["tax_id"] == "123.456.789-00"
        assert row["imported_by_job"] == "job-9"

    def test_organization_code(self):
        assert map_contact(raw_contact(1, tipo=2))["person_type"] == "Organization"

    def test_unknown_person_type_is_null(self):
        assert map_contact(raw_contact(1, tipo=7))["person_type"] is None
        assert map_contact(dict(raw_contact(1), tipo=None))["person_type"] is None

    def test_missing_nested_contact_list(self):
        raw = dict(raw_contact(1), pessoaContato=[])
        assert map_contact(raw)["phone"] is None


class TestMapOrder:

    def test_fields(self):
        row = map_order(raw_order(55, "99.90", status="Entregue", date="2024-03-02T12:00:00"), contact_id=3)
        assert row["external_order_id"] == "55"
        assert row["contact_id"] == 3
        assert row["amount"] == 99.9
        assert row["status_text"] == "Entregue"
        assert row["order_date"].startswith("2024-03-02T12:00:00")

    def test_order_without_id_is_dropped(self):
        assert map_order({"valorTotal": "1"}, contact_id=1) is None

    def test_bad_amount_is_zero(self):
        assert map_order(dict(raw_order(1, "n/a")), contact_id=1)["amount"] == 0.0


# ---------------------------------------------------------------------------
# 2. Rejections and dedup
# ---------------------------------------------------------------------------

class TestIngestPage:

    @pytest.mark.asyncio
    async def test_missing_email_and_excluded_domain_are_rejected(self):
        store = FakeStore()
        stage = IngestStage(store, FakeCommerce())
        settings = SyncSettings(excluded_domains=frozenset({"marketplace.example"}))
        items = [
            raw_contact(1, email=""),
            raw_contact(2, email="buyer@Marketplace.Example"),
            {"id": None, "email": "x@shop.example"},
            raw_contact(3),
        ]

        result = await stage.ingest_page(make_job(), items, SyncMode.INCREMENTAL, settings)

        assert result.rejected == 3
        assert result.new_contacts == 1
        assert result.stop is False
        assert store.by_external_id(3) is not None

    @pytest.mark.asyncio
    async def test_incremental_stops_at_first_known_record(self):
        store = FakeStore()
        store.seed_contact(8)
        stage = IngestStage(store, FakeCommerce())
        items = [raw_contact(10), raw_contact(9), raw_contact(8), raw_contact(7)]

        result = await stage.ingest_page(make_job(), items, SyncMode.INCREMENTAL, SyncSettings())

        assert result.stop is True
        assert result.new_contacts == 2
        assert result.skipped_existing == 1
        assert store.by_external_id(7) is None

    @pytest.mark.asyncio
    async def test_full_mode_skips_known_and_continues(self):
        store = FakeStore()
        store.seed_contact(8)
        stage = IngestStage(store, FakeCommerce())
        items = [raw_contact(7), raw_contact(8), raw_contact(9)]

        result = await stage.ingest_page(make_job(mode=SyncMode.FULL), items, SyncMode.FULL, SyncSettings())

        assert result.stop is False
        assert result.new_contacts == 2
        assert result.skipped_existing == 1

    @pytest.mark.asyncio
    async def test_rerunning_page_is_idempotent(self):
        store = FakeStore()
        stage = IngestStage(store, FakeCommerce())
        items = [raw_contact(1), raw_contact(2)]
        job = make_job()

        first = await stage.ingest_page(job, items, SyncMode.INCREMENTAL, SyncSettings())
        second = await stage.ingest_page(job, items, SyncMode.INCREMENTAL, SyncSettings())

        assert first.new_contacts == 2
        assert second.new_contacts == 0
        assert second.stop is False
        assert len(store.contacts) == 2

    @pytest.mark.asyncio
    async def test_other_jobs_rows_still_stop_incremental(self):
        store = FakeStore()
        store.seed_contact(2, imported_by_job="job-old")
        stage = IngestStage(store, FakeCommerce())

        result = await stage.ingest_page(make_job("job-new"), [raw_contact(2)], SyncMode.INCREMENTAL, SyncSettings())

        assert result.stop is True

    @pytest.mark.asyncio
    async def test_duplicate_id_within_page_inserted_once(self):
        store = FakeStore()
        stage = IngestStage(store, FakeCommerce())

        result = await stage.ingest_page(make_job(), [raw_contact(4), raw_contact(4)], SyncMode.FULL, SyncSettings())

        assert result.new_contacts == 1
        assert len(store.contacts) == 1

    @pytest.mark.asyncio
    async def test_insert_failure_is_logged_and_skipped(self):
        store = FakeStore()
        original_insert = store.insert_contact

        async def flaky_insert(row):
            if row["external_id"] == "2":
                raise Exception("value too long for type character varying(255)")
            return await original_insert(row)

        store.insert_contact = flaky_insert
        stage = IngestStage(store, FakeCommerce())

        result = await stage.ingest_page(make_job(), [raw_contact(1), raw_contact(2), raw_contact(3)], SyncMode.FULL, SyncSettings())

        assert result.new_contacts == 2
        assert any("ERROR inserting contact 2" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_max_new_caps_inserts(self):
        store = FakeStore()
        stage = IngestStage(store, FakeCommerce())
        items = [raw_contact(i) for i in range(1, 6)]

        result = await stage.ingest_page(make_job(), items, SyncMode.FULL, SyncSettings(), max_new=3)

        assert result.new_contacts == 3
        assert result.stop is True


# ---------------------------------------------------------------------------
# 3. Orders of new contacts
# ---------------------------------------------------------------------------

class TestIngestOrders:

    @pytest.mark.asyncio
    async def test_orders_upserted_and_aggregates_computed(self):
        store = FakeStore()
        commerce = FakeCommerce()
        commerce.orders_by_tax["111"] = [raw_order(1, "10.50"), raw_order(2, "20.25")]
        stage = IngestStage(store, commerce)

        result = await stage.ingest_page(make_job(), [raw_contact(5, tax_id="111")], SyncMode.FULL, SyncSettings())

        contact = store.by_external_id(5)
        assert result.orders_upserted == 2
        assert contact["purchase_count"] == 2
        assert contact["total_spent"] == 30.75
        assert contact["last_processed_at"] is not None

    @pytest.mark.asyncio
    async def test_reupserting_same_orders_keeps_aggregates(self):
        store = FakeStore()
        commerce = FakeCommerce()
        commerce.orders_by_tax["111"] = [raw_order(1, "10.00"), raw_order(2, "5.00")]
        stage = IngestStage(store, commerce)
        await stage.ingest_page(make_job(), [raw_contact(5, tax_id="111")], SyncMode.FULL, SyncSettings())
        contact = store.by_external_id(5)

        await stage._sync_orders(make_job(), contact, [])

        contact = store.by_external_id(5)
        assert len(store.orders) == 2
        assert contact["purchase_count"] == 2
        assert contact["total_spent"] == 15.0

    @pytest.mark.asyncio
    async def test_contact_without_tax_id_fetches_no_orders(self):
        store = FakeStore()
        commerce = FakeCommerce()
        commerce.failing_tax_ids.add(None)
        stage = IngestStage(store, commerce)

        result = await stage.ingest_page(make_job(), [raw_contact(5)], SyncMode.FULL, SyncSettings())

        assert result.orders_upserted == 0
        assert not any("WARNING" in line for line in result.logs)

    @pytest.mark.asyncio
    async def test_order_upsert_failure_is_warning(self):
        store = FakeStore()
        store.fail_upsert = True
        commerce = FakeCommerce()
        commerce.orders_by_tax["111"] = [raw_order(1, "10.00")]
        stage = IngestStage(store, commerce)

        result = await stage.ingest_page(make_job(), [raw_contact(5, tax_id="111")], SyncMode.FULL, SyncSettings())

        assert result.new_contacts == 1
        assert result.orders_upserted == 0
        assert any("WARNING: could not store orders for 111" in line for line in result.logs)
        assert store.by_external_id(5)["purchase_count"] == 0
