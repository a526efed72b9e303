"""Database schema DDL for the call pipeline."""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS call_jobs (
  id               UUID PRIMARY KEY,
  call_id          TEXT NOT NULL,
  user_id          TEXT NOT NULL,
  organization_id  TEXT,
  file_url         TEXT NOT NULL,
  file_name        TEXT NOT NULL,
  kind             TEXT NOT NULL,

  status           TEXT NOT NULL CHECK (status IN ('pending', 'active', 'completed', 'failed', 'stalled')),
  priority         INT NOT NULL DEFAULT 10,

  attempts         INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL CHECK (max_attempts >= 1),
  backoff_policy   JSONB NOT NULL,
  run_not_before   TIMESTAMPTZ NOT NULL,

  lock_token       UUID,
  claimed_by       TEXT,
  claimed_at       TIMESTAMPTZ,
  last_error       JSONB,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  finished_at      TIMESTAMPTZ,

  CHECK (attempts >= 0 AND attempts <= max_attempts)
);

-- One outstanding job per call and kind
CREATE UNIQUE INDEX IF NOT EXISTS idx_call_jobs_outstanding_call_kind
ON call_jobs (call_id, kind)
WHERE status IN ('pending', 'active', 'stalled');

-- Claim order for ready jobs
CREATE INDEX IF NOT EXISTS idx_call_jobs_pending_ready
ON call_jobs (kind, priority, run_not_before)
WHERE status = 'pending';

-- Stalled job scan
CREATE INDEX IF NOT EXISTS idx_call_jobs_active_updated
ON call_jobs (updated_at)
WHERE status IN ('active', 'stalled');

-- Retention cleanup and failed job listing
CREATE INDEX IF NOT EXISTS idx_call_jobs_status_finished
ON call_jobs (status, finished_at);

CREATE INDEX IF NOT EXISTS idx_call_jobs_call_id
ON call_jobs (call_id);

-- Queue-wide pause switch, always exactly one row
CREATE TABLE IF NOT EXISTS call_jobs_control (
  id          BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
  paused      BOOLEAN NOT NULL DEFAULT FALSE,
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

INSERT INTO call_jobs_control (id) VALUES (TRUE) ON CONFLICT (id) DO NOTHING;
"""
