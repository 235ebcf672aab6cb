#!/usr/bin/env python3
"""Create the event-ingest tables and database functions."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. super_admins
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    password_hash VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. campaign_instances
CREATE TABLE IF NOT EXISTS campaign_instances (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255),
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    total_sent INTEGER NOT NULL DEFAULT 0 CHECK (total_sent >= 0),
    total_delivered INTEGER NOT NULL DEFAULT 0 CHECK (total_delivered >= 0),
    total_opened INTEGER NOT NULL DEFAULT 0 CHECK (total_opened >= 0),
    total_clicked INTEGER NOT NULL DEFAULT 0 CHECK (total_clicked >= 0),
    total_replied INTEGER NOT NULL DEFAULT 0 CHECK (total_replied >= 0),
    total_bounced INTEGER NOT NULL DEFAULT 0 CHECK (total_bounced >= 0),
    total_unsubscribed INTEGER NOT NULL DEFAULT 0 CHECK (total_unsubscribed >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. campaign_enrollments
CREATE TABLE IF NOT EXISTS campaign_enrollments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id UUID NOT NULL REFERENCES campaign_instances(id) ON DELETE CASCADE,
    contact_id VARCHAR(255) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'enrolled'
        CHECK (status IN ('enrolled', 'active', 'paused', 'completed', 'unsubscribed', 'bounced')),
    current_step INTEGER NOT NULL DEFAULT 0 CHECK (current_step >= 0),
    next_action_at TIMESTAMPTZ,
    provider_message_id VARCHAR(255),
    provider_action_id VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(instance_id, contact_id)
);
CREATE INDEX IF NOT EXISTS idx_campaign_enrollments_provider_message_id ON campaign_enrollments(provider_message_id);
CREATE INDEX IF NOT EXISTS idx_campaign_enrollments_provider_action_id ON campaign_enrollments(provider_action_id);

-- 4. campaign_events
CREATE TABLE IF NOT EXISTS campaign_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider_slug VARCHAR(50) NOT NULL,
    provider_event_id VARCHAR(255),
    channel VARCHAR(30) NOT NULL,
    event_type VARCHAR(50) NOT NULL,
    enrollment_id UUID REFERENCES campaign_enrollments(id) ON DELETE SET NULL,
    instance_id UUID,
    contact_id VARCHAR(255),
    provider_message_id VARCHAR(255),
    step_number INTEGER,
    occurred_at TIMESTAMPTZ NOT NULL,
    raw_payload TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    status VARCHAR(20) NOT NULL DEFAULT 'received'
        CHECK (status IN ('received', 'applied', 'orphaned', 'dead_letter')),
    error TEXT,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    applied_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_campaign_events_provider_event
    ON campaign_events(provider_slug, provider_event_id)
    WHERE provider_event_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_campaign_events_status_received_at ON campaign_events(status, received_at);

-- 5. webhook_orphan_events
CREATE TABLE IF NOT EXISTS webhook_orphan_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_id UUID NOT NULL UNIQUE REFERENCES campaign_events(id) ON DELETE CASCADE,
    provider_slug VARCHAR(50) NOT NULL,
    event_type VARCHAR(50),
    canonical_event JSONB NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    failure_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    lease_owner VARCHAR(255),
    lease_expires_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_webhook_orphan_events_next_retry_at ON webhook_orphan_events(next_retry_at);
CREATE INDEX IF NOT EXISTS idx_webhook_orphan_events_lease_owner ON webhook_orphan_events(lease_owner);

-- 6. webhook_dead_letters
CREATE TABLE IF NOT EXISTS webhook_dead_letters (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_id UUID REFERENCES campaign_events(id) ON DELETE SET NULL,
    provider_slug VARCHAR(50) NOT NULL,
    provider_event_id VARCHAR(255),
    channel VARCHAR(30),
    event_type VARCHAR(50),
    reason VARCHAR(50) NOT NULL
        CHECK (reason IN ('max_attempts_exceeded', 'validation_failed', 'apply_failed')),
    replayable BOOLEAN NOT NULL DEFAULT TRUE,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'replayed', 'requeued', 'replay_failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    failure_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    last_error TEXT,
    raw_payload TEXT NOT NULL,
    canonical_event JSONB,
    replay_count INTEGER NOT NULL DEFAULT 0,
    last_replay_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_webhook_dead_letters_event_id
    ON webhook_dead_letters(event_id)
    WHERE event_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_webhook_dead_letters_status ON webhook_dead_letters(status, created_at DESC);

-- 7. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    gauges JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

FUNCTIONS = """
CREATE OR REPLACE FUNCTION apply_campaign_event(
    p_event_id UUID,
    p_enrollment_id UUID,
    p_counter TEXT,
    p_terminal_status TEXT,
    p_advance_step BOOLEAN
) RETURNS JSONB
LANGUAGE plpgsql
AS $$
DECLARE
    v_instance_id UUID;
    v_status TEXT;
    v_step INTEGER;
    v_claimed UUID;
BEGIN
    IF p_counter IS NOT NULL AND p_counter NOT IN (
        'total_sent', 'total_delivered', 'total_opened', 'total_clicked',
        'total_replied', 'total_bounced', 'total_unsubscribed'
    ) THEN
        RAISE EXCEPTION 'invalid counter %', p_counter;
    END IF;

    SELECT instance_id INTO v_instance_id FROM campaign_enrollments WHERE id = p_enrollment_id;
    IF v_instance_id IS NULL THEN
        RAISE EXCEPTION 'enrollment % not found', p_enrollment_id;
    END IF;

    -- Exactly-once guard: only the transaction that flips the row goes on to mutate state.
    UPDATE campaign_events
       SET status = 'applied',
           applied_at = NOW(),
           enrollment_id = p_enrollment_id,
           instance_id = v_instance_id,
           error = NULL
     WHERE id = p_event_id
       AND status <> 'applied'
    RETURNING id INTO v_claimed;

    IF v_claimed IS NULL THEN
        IF NOT EXISTS (SELECT 1 FROM campaign_events WHERE id = p_event_id) THEN
            RAISE EXCEPTION 'campaign event % not found', p_event_id;
        END IF;
        SELECT status, current_step INTO v_status, v_step FROM campaign_enrollments WHERE id = p_enrollment_id;
        RETURN jsonb_build_object('applied', FALSE, 'enrollment_status', v_status, 'current_step', v_step);
    END IF;

    IF p_counter IS NOT NULL THEN
        EXECUTE format(
            'UPDATE campaign_instances SET %1$I = %1$I + 1, updated_at = NOW() WHERE id = $1',
            p_counter
        ) USING v_instance_id;
    END IF;

    UPDATE campaign_enrollments
       SET status = CASE
               WHEN status IN ('completed', 'unsubscribed', 'bounced') THEN status
               WHEN p_terminal_status IS NOT NULL THEN p_terminal_status
               WHEN p_advance_step AND status = 'enrolled' THEN 'active'
               ELSE status
           END,
           current_step = CASE
               WHEN p_advance_step AND status NOT IN ('completed', 'unsubscribed', 'bounced')
                   THEN current_step + 1
               ELSE current_step
           END,
           updated_at = NOW()
     WHERE id = p_enrollment_id
    RETURNING status, current_step INTO v_status, v_step;

    RETURN jsonb_build_object('applied', TRUE, 'enrollment_status', v_status, 'current_step', v_step);
END;
$$;

CREATE OR REPLACE FUNCTION claim_orphan_events(
    p_worker_id TEXT,
    p_limit INTEGER,
    p_lease_seconds INTEGER
) RETURNS SETOF webhook_orphan_events
LANGUAGE plpgsql
AS $$
BEGIN
    RETURN QUERY
    UPDATE webhook_orphan_events o
       SET lease_owner = p_worker_id,
           lease_expires_at = NOW() + make_interval(secs => p_lease_seconds)
     WHERE o.id IN (
        SELECT id
          FROM webhook_orphan_events
         WHERE next_retry_at <= NOW()
           AND (lease_owner IS NULL OR lease_expires_at < NOW())
         ORDER BY next_retry_at
         LIMIT p_limit
         FOR UPDATE SKIP LOCKED
     )
    RETURNING o.*;
END;
$$;
"""


def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating functions...")
    cur.execute(FUNCTIONS)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute(
        "SELECT routine_name FROM information_schema.routines "
        "WHERE routine_schema = 'public' AND routine_name IN ('apply_campaign_event', 'claim_orphan_events');"
    )
    routines = cur.fetchall()
    print(f"Functions: {[r[0] for r in routines]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
