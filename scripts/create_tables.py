#!/usr/bin/env python3
"""Create the webhook pipeline tables and store functions for WhopMail Events."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- Owned by the dashboard app; only the columns this service reads are listed.
CREATE TABLE IF NOT EXISTS email_platform_configs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    whop_user_id TEXT NOT NULL,
    platform VARCHAR(50) NOT NULL DEFAULT 'resend',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_audiences (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    config_id UUID NOT NULL REFERENCES email_platform_configs(id) ON DELETE CASCADE,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_contacts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    audience_id UUID NOT NULL REFERENCES email_audiences(id) ON DELETE CASCADE,
    email VARCHAR(320) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_email_contacts_email ON email_contacts(email);

-- 1. broadcast_jobs
CREATE TABLE IF NOT EXISTS broadcast_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id TEXT NOT NULL,
    resend_broadcast_id TEXT,
    total_members INTEGER,
    success_count INTEGER NOT NULL DEFAULT 0,
    opened_count INTEGER NOT NULL DEFAULT 0,
    clicked_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    complained_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    last_event TEXT,
    last_event_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_broadcast_jobs_user_id ON broadcast_jobs(user_id);
CREATE INDEX IF NOT EXISTS idx_broadcast_jobs_resend_broadcast_id ON broadcast_jobs(resend_broadcast_id);

-- 2. email_analytics_sends
CREATE TABLE IF NOT EXISTS email_analytics_sends (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    resend_email_id TEXT UNIQUE,
    resend_broadcast_id TEXT,
    recipient_email VARCHAR(320) NOT NULL,
    status VARCHAR(30) NOT NULL DEFAULT 'queued',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_email_analytics_sends_batch_recipient
    ON email_analytics_sends(resend_broadcast_id, recipient_email);

-- 3. email_open_events
CREATE TABLE IF NOT EXISTS email_open_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    broadcast_id UUID REFERENCES broadcast_jobs(id) ON DELETE SET NULL,
    resend_broadcast_id TEXT,
    email_id TEXT,
    recipient_email VARCHAR(320),
    ip_address TEXT,
    user_agent TEXT,
    opened_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_email_open_events_broadcast_opened
    ON email_open_events(broadcast_id, opened_at);

-- 4. email_click_events
CREATE TABLE IF NOT EXISTS email_click_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    broadcast_id UUID REFERENCES broadcast_jobs(id) ON DELETE SET NULL,
    resend_broadcast_id TEXT,
    email_id TEXT,
    recipient_email VARCHAR(320),
    clicked_link TEXT NOT NULL DEFAULT 'unknown',
    ip_address TEXT,
    user_agent TEXT,
    clicked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_email_click_events_broadcast_clicked
    ON email_click_events(broadcast_id, clicked_at);

-- 5. user_webhooks
CREATE TABLE IF NOT EXISTS user_webhooks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    whop_user_id TEXT NOT NULL,
    webhook_url TEXT NOT NULL,
    webhook_name VARCHAR(255) NOT NULL DEFAULT 'My Webhook',
    description TEXT,
    events TEXT[] NOT NULL DEFAULT ARRAY['email.opened', 'email.clicked', 'email.delivered'],
    secret_key TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_success_at TIMESTAMPTZ,
    last_failure_at TIMESTAMPTZ,
    last_failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_user_webhooks_owner_active ON user_webhooks(whop_user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_user_webhooks_events ON user_webhooks USING GIN (events);

-- 6. webhook_events (per-subscriber delivery log)
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_webhook_id UUID NOT NULL REFERENCES user_webhooks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    event_data JSONB,
    resend_event_id TEXT,
    email_id TEXT,
    member_email VARCHAR(320),
    status VARCHAR(10) NOT NULL CHECK (status IN ('sent', 'failed')),
    last_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_user_webhook_id ON webhook_events(user_webhook_id, last_attempt_at);

-- 7. inbound_webhook_events (idempotency ledger)
CREATE TABLE IF NOT EXISTS inbound_webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider_slug VARCHAR(50) NOT NULL,
    event_key TEXT NOT NULL,
    event_type TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'received',
    last_error TEXT,
    payload JSONB,
    completed_stages JSONB NOT NULL DEFAULT '[]'::jsonb,
    claimed_at TIMESTAMPTZ,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(provider_slug, event_key)
);

-- Counter updates run as one statement so concurrent webhooks cannot lose increments.
CREATE OR REPLACE FUNCTION apply_broadcast_event(
    p_broadcast_id UUID,
    p_counter TEXT,
    p_last_event TEXT
) RETURNS SETOF broadcast_jobs
LANGUAGE sql AS $$
    UPDATE broadcast_jobs SET
        success_count = CASE
            WHEN p_counter = 'success_count'
                 AND (total_members IS NULL OR success_count < total_members)
            THEN success_count + 1 ELSE success_count END,
        opened_count = CASE WHEN p_counter = 'opened_count' THEN opened_count + 1 ELSE opened_count END,
        clicked_count = CASE WHEN p_counter = 'clicked_count' THEN clicked_count + 1 ELSE clicked_count END,
        error_count = CASE WHEN p_counter = 'error_count' THEN error_count + 1 ELSE error_count END,
        complained_count = CASE WHEN p_counter = 'complained_count' THEN complained_count + 1 ELSE complained_count END,
        failed_count = CASE WHEN p_counter = 'failed_count' THEN failed_count + 1 ELSE failed_count END,
        last_event = p_last_event,
        last_event_at = NOW(),
        updated_at = NOW()
    WHERE id = p_broadcast_id
    RETURNING *;
$$;

CREATE OR REPLACE FUNCTION record_user_webhook_failure(
    p_webhook_id UUID,
    p_reason TEXT
) RETURNS SETOF user_webhooks
LANGUAGE sql AS $$
    UPDATE user_webhooks SET
        retry_count = retry_count + 1,
        last_failure_at = NOW(),
        last_failure_reason = p_reason,
        updated_at = NOW()
    WHERE id = p_webhook_id
    RETURNING *;
$$;
"""

def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables and functions...")
    cur.execute(SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute(
        "SELECT routine_name FROM information_schema.routines "
        "WHERE routine_schema = 'public' AND routine_name IN ('apply_broadcast_event', 'record_user_webhook_failure');"
    )
    functions = cur.fetchall()
    print(f"Functions: {[f[0] for f in functions]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
