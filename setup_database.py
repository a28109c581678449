#!/usr/bin/env python3
"""
Setup Supabase Database Tables for StoreSync
Creates the contact/order mirror, the sync job tables and the progress function.

Statements are sent through the `exec_sql` RPC, which must exist in the
project (service role only).
"""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv
from supabase import create_client, Client

ROOT_DIR = Path(__file__).parent / 'backend'
load_dotenv(ROOT_DIR / '.env')

supabase_url = os.environ.get('SUPABASE_URL')
supabase_key = os.environ.get('SUPABASE_SERVICE_KEY')

SQL_COMMANDS = [
    # Contacts mirrored from the commerce API
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        external_id VARCHAR(64) UNIQUE NOT NULL,
        name VARCHAR(255) NOT NULL DEFAULT '',
        email VARCHAR(255),
        tax_id VARCHAR(32),
        person_type VARCHAR(20) CHECK (person_type IN ('Individual', 'Organization')),
        gender VARCHAR(10),
        phone VARCHAR(50),
        purchase_count INTEGER NOT NULL DEFAULT 0,
        total_spent NUMERIC(14, 2) NOT NULL DEFAULT 0,
        last_processed_at TIMESTAMPTZ,
        imported_by_job UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_contacts_created_at ON contacts(created_at);
    CREATE INDEX IF NOT EXISTS idx_contacts_last_processed_at ON contacts(last_processed_at);
    """,

    # Orders, each owned by one contact
    """
    CREATE TABLE IF NOT EXISTS orders (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        contact_id BIGINT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        external_order_id VARCHAR(64) UNIQUE NOT NULL,
        amount NUMERIC(14, 2) NOT NULL DEFAULT 0,
        status_text VARCHAR(255) NOT NULL DEFAULT '',
        status_code INTEGER,
        order_date TIMESTAMPTZ
    );
    CREATE INDEX IF NOT EXISTS idx_orders_contact_date ON orders(contact_id, order_date DESC);
    CREATE INDEX IF NOT EXISTS idx_orders_status_text ON orders(status_text);
    """,

    # Sync jobs; at most one pending/running row at any time
    """
    CREATE TABLE IF NOT EXISTS sync_jobs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        status VARCHAR(20) NOT NULL
            CHECK (status IN ('pending', 'running', 'completed', 'failed', 'skipped', 'cancelled')),
        mode VARCHAR(20) NOT NULL CHECK (mode IN ('incremental', 'full')),
        stage VARCHAR(20) NOT NULL DEFAULT 'ingest'
            CHECK (stage IN ('ingest', 'orders', 'history', 'reconcile', 'finalize')),
        attempt INTEGER NOT NULL DEFAULT 1,
        cursor_page INTEGER NOT NULL DEFAULT 0,
        new_contacts_added INTEGER NOT NULL DEFAULT 0,
        orders_updated_count INTEGER NOT NULL DEFAULT 0,
        record_limit INTEGER CHECK (record_limit IS NULL OR record_limit > 0),
        trigger VARCHAR(20) NOT NULL DEFAULT 'manual',
        user_id UUID,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        finished_at TIMESTAMPTZ
    );
    CREATE UNIQUE INDEX IF NOT EXISTS one_active_sync_job
        ON sync_jobs ((true)) WHERE status IN ('pending', 'running');
    CREATE INDEX IF NOT EXISTS idx_sync_jobs_created_at ON sync_jobs(created_at DESC);
    """,

    # Append-only job log
    """
    CREATE TABLE IF NOT EXISTS sync_job_logs (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        job_id UUID NOT NULL REFERENCES sync_jobs(id) ON DELETE CASCADE,
        level VARCHAR(10) NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_sync_job_logs_job_id ON sync_job_logs(job_id, id);
    """,

    # Settings singleton
    """
    CREATE TABLE IF NOT EXISTS settings (
        singleton_key INTEGER PRIMARY KEY DEFAULT 1 CHECK (singleton_key = 1),
        batch_size INTEGER NOT NULL DEFAULT 50 CHECK (batch_size > 0),
        excluded_domains TEXT[] NOT NULL DEFAULT '{}'
    );
    INSERT INTO settings (singleton_key) VALUES (1) ON CONFLICT DO NOTHING;
    """,

    # Monotonic progress: the cursor never moves back, counters only grow
    """
    CREATE OR REPLACE FUNCTION record_sync_job_progress(
        p_job_id UUID, p_page INTEGER, p_new_contacts INTEGER, p_orders_updated INTEGER
    ) RETURNS VOID AS $$
        UPDATE sync_jobs SET
            cursor_page = GREATEST(cursor_page, p_page),
            new_contacts_added = new_contacts_added + GREATEST(p_new_contacts, 0),
            orders_updated_count = orders_updated_count + GREATEST(p_orders_updated, 0),
            updated_at = NOW()
        WHERE id = p_job_id AND status IN ('pending', 'running');
    $$ LANGUAGE sql;
    """,
]

TABLES = ['contacts', 'orders', 'sync_jobs', 'sync_job_logs', 'settings']


def create_tables(supabase: Client) -> bool:
    """Run every DDL statement; stop at the first failure"""
    print("🚀 Setting up StoreSync database tables...")

    for i, sql in enumerate(SQL_COMMANDS, 1):
        try:
            print(f"   Executing SQL command {i}/{len(SQL_COMMANDS)}...")
            supabase.rpc('exec_sql', {'sql': sql}).execute()
            print(f"   ✅ Command {i} executed successfully")
        except Exception as e:
            print(f"   ❌ Error executing command {i}: {str(e)}")
            return False

    print("✅ Database setup completed successfully!")
    return True


def verify_tables(supabase: Client) -> bool:
    """Verify that all tables were created"""
    print("\n🔍 Verifying table creation...")

    for table in TABLES:
        try:
            supabase.table(table).select('*').limit(1).execute()
            print(f"   ✅ Table '{table}' exists and is accessible")
        except Exception as e:
            print(f"   ❌ Table '{table}' error: {str(e)}")
            return False

    print("✅ All tables verified successfully!")
    return True


if __name__ == "__main__":
    print("StoreSync Database Setup")
    print("=" * 50)

    if not supabase_url or not supabase_key:
        print("❌ Missing Supabase credentials in environment variables")
        sys.exit(1)

    print(f"Supabase URL: {supabase_url}")
    client = create_client(supabase_url, supabase_key)

    if create_tables(client) and verify_tables(client):
        print("\n🎉 Database setup completed successfully!")
    else:
        print("\n❌ Database setup failed")
        sys.exit(1)
