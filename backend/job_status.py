"""
Canonical values for the sync_jobs.status, sync_jobs.mode and sync_jobs.stage columns.

Single source of truth: import these everywhere the strings are written or compared.
Plain class constants (not Python Enum) so the values serialize to bare strings
for Supabase writes without .value unwrapping.

Valid state machine:
    (new row) → PENDING → RUNNING → COMPLETED
                                  → FAILED  → PENDING (continue)
                        → CANCELLED
    (new row, another job active) → SKIPPED
"""


class JobStatus:
    PENDING = "pending"        # row created, no worker step has picked it up yet
    RUNNING = "running"        # a worker step is walking pages or reconciling
    COMPLETED = "completed"    # every stage finished
    FAILED = "failed"          # unrecoverable error or stale; cursor kept for continue
    SKIPPED = "skipped"        # another job was active at trigger time
    CANCELLED = "cancelled"    # stopped from outside

    ALL = frozenset({PENDING, RUNNING, COMPLETED, FAILED, SKIPPED, CANCELLED})
    ACTIVE = frozenset({PENDING, RUNNING})
    TERMINAL = frozenset({COMPLETED, FAILED, SKIPPED, CANCELLED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL

    @classmethod
    def is_terminal(cls, value: str) -> bool:
        return value in cls.TERMINAL


class SyncMode:
    INCREMENTAL = "incremental"  # newest first, stop at the first known contact
    FULL = "full"                # oldest first, walk every page

    ALL = frozenset({INCREMENTAL, FULL})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL

    @classmethod
    def order_direction(cls, mode: str) -> str:
        return "asc" if mode == cls.FULL else "desc"


class PipelineStage:
    INGEST = "ingest"
    ORDERS = "orders"          # status refresh of stored open orders
    HISTORY = "history"        # re-list orders of contacts not processed recently
    RECONCILE = "reconcile"
    FINALIZE = "finalize"

    SEQUENCE = (INGEST, ORDERS, HISTORY, RECONCILE, FINALIZE)

    @classmethod
    def next(cls, stage: str) -> str:
        idx = cls.SEQUENCE.index(stage)
        return cls.SEQUENCE[min(idx + 1, len(cls.SEQUENCE) - 1)]
