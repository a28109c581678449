"""
Job Status Constant Tests
=========================
The values are written verbatim to sync_jobs.status / mode / stage and are
checked by database CHECK constraints, so they must not drift.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from job_status import JobStatus, SyncMode, PipelineStage
from models import SyncJob, SyncSettings


class TestJobStatusConstants:

    def test_values(self):
        assert JobStatus.ALL == {"pending", "running", "completed", "failed", "skipped", "cancelled"}

    def test_active_and_terminal_partition_all(self):
        assert JobStatus.ACTIVE | JobStatus.TERMINAL == JobStatus.ALL
        assert not JobStatus.ACTIVE & JobStatus.TERMINAL

    def test_is_valid(self):
        assert JobStatus.is_valid("running") is True
        assert JobStatus.is_valid("complete") is False
        assert JobStatus.is_valid("") is False

    def test_is_terminal(self):
        assert JobStatus.is_terminal("skipped") is True
        assert JobStatus.is_terminal("pending") is False


class TestSyncMode:

    def test_order_direction(self):
        assert SyncMode.order_direction(SyncMode.FULL) == "asc"
        assert SyncMode.order_direction(SyncMode.INCREMENTAL) == "desc"

    def test_is_valid(self):
        assert SyncMode.is_valid("full")
        assert not SyncMode.is_valid("partial")


class TestPipelineStage:

    def test_sequence(self):
        assert PipelineStage.next(PipelineStage.INGEST) == PipelineStage.ORDERS
        assert PipelineStage.next(PipelineStage.ORDERS) == PipelineStage.HISTORY
        assert PipelineStage.next(PipelineStage.HISTORY) == PipelineStage.RECONCILE
        assert PipelineStage.next(PipelineStage.RECONCILE) == PipelineStage.FINALIZE
        assert PipelineStage.next(PipelineStage.FINALIZE) == PipelineStage.FINALIZE

    def test_unknown_stage(self):
        with pytest.raises(ValueError):
            PipelineStage.next("publish")


class TestModels:

    def test_sync_job_from_row_and_to_dict(self):
        job = SyncJob.from_row({
            "id": "abc",
            "status": "running",
            "mode": "full",
            "stage": "reconcile",
            "cursor_page": 4,
            "new_contacts_added": 12,
            "record_limit": 100,
            "created_at": "2024-06-01T10:00:00Z",
        })
        data = job.to_dict()
        assert data["cursorPage"] == 4
        assert data["newContactsAdded"] == 12
        assert data["createdAt"] == "2024-06-01T10:00:00+00:00"
        assert data["finishedAt"] is None
        assert job.limit_reached(100) is True
        assert job.limit_reached(99) is False

    def test_settings_defaults_when_row_missing(self):
        settings = SyncSettings.from_row(None, default_batch_size=50)
        assert settings.batch_size == 50
        assert settings.excluded_domains == frozenset()

    def test_excluded_domain_case_insensitive(self):
        settings = SyncSettings.from_row({"batch_size": 20, "excluded_domains": [" Test.COM ", ""]})
        assert settings.batch_size == 20
        assert settings.is_excluded("someone@test.com")
        assert settings.is_excluded("SOMEONE@TEST.COM")
        assert not settings.is_excluded("someone@test.com.br")
        assert not settings.is_excluded("no-at-sign")
