"""Database schema DDL for tenant jobs."""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS jobs (
  id               UUID PRIMARY KEY,
  queue_name       TEXT NOT NULL,
  tenant_id        TEXT NOT NULL,
  type             TEXT NOT NULL,

  status           TEXT NOT NULL CHECK (status IN ('waiting', 'active', 'delayed', 'completed', 'dead', 'canceled')),
  payload          JSONB NOT NULL,

  attempts         INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL,
  available_at     TIMESTAMPTZ NOT NULL,

  locked_by        TEXT,
  locked_until     TIMESTAMPTZ,
  last_error       JSONB,
  progress         JSONB NOT NULL DEFAULT '{}'::jsonb,
  cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,

  quota_type       TEXT,
  quota_reserved   INT NOT NULL DEFAULT 0,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  finished_at      TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_jobs_eligible
ON jobs (queue_name, available_at, created_at)
WHERE status IN ('waiting', 'delayed');

CREATE INDEX IF NOT EXISTS idx_jobs_queue_status
ON jobs (queue_name, status);

CREATE INDEX IF NOT EXISTS idx_jobs_tenant_status
ON jobs (tenant_id, status);

-- Index for lease reaper to find expired leases efficiently
CREATE INDEX IF NOT EXISTS idx_jobs_expired_leases
ON jobs (locked_until)
WHERE status = 'active';
"""

TENANT_RATE_STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS tenant_rate_state (
  tenant_id              TEXT PRIMARY KEY,
  plan_id                TEXT NOT NULL,
  tokens                 DOUBLE PRECISION NOT NULL CHECK (tokens >= 0),
  capacity               DOUBLE PRECISION NOT NULL CHECK (capacity > 0),
  refill_rate_per_second DOUBLE PRECISION NOT NULL CHECK (refill_rate_per_second > 0),
  last_refill_at         TIMESTAMPTZ NOT NULL,
  CHECK (tokens <= capacity)
);
"""

QUOTA_USAGE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS quota_usage (
  tenant_id     TEXT NOT NULL,
  quota_type    TEXT NOT NULL,
  period_start  TIMESTAMPTZ NOT NULL,
  period_end    TIMESTAMPTZ NOT NULL,
  used          BIGINT NOT NULL DEFAULT 0 CHECK (used >= 0),
  updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (tenant_id, quota_type, period_start)
);

CREATE INDEX IF NOT EXISTS idx_quota_usage_live
ON quota_usage (tenant_id, quota_type, period_end);
"""

QUOTA_OVERRIDES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS quota_overrides (
  tenant_id   TEXT NOT NULL,
  quota_type  TEXT NOT NULL,
  quota_limit BIGINT NOT NULL CHECK (quota_limit >= -1),
  reason      TEXT,
  set_by      TEXT,
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (tenant_id, quota_type)
);
"""

SUBSCRIPTIONS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS subscriptions (
  tenant_id                TEXT PRIMARY KEY,
  plan_id                  TEXT NOT NULL,
  external_subscription_id TEXT NOT NULL,
  status                   TEXT NOT NULL CHECK (status IN ('trialing', 'active', 'past_due', 'canceled')),
  current_period_start     TIMESTAMPTZ,
  current_period_end       TIMESTAMPTZ,
  last_event_at            TIMESTAMPTZ,
  updated_at               TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_external_id
ON subscriptions (external_subscription_id);
"""

WEBHOOK_EVENTS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS webhook_events (
  external_event_id TEXT PRIMARY KEY,
  type              TEXT NOT NULL,
  tenant_id         TEXT,
  received_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  processed_at      TIMESTAMPTZ,
  outcome           TEXT
);
"""

ALL_TABLES_DDL = "\n".join(
    [
        JOBS_TABLE_DDL,
        TENANT_RATE_STATE_TABLE_DDL,
        QUOTA_USAGE_TABLE_DDL,
        QUOTA_OVERRIDES_TABLE_DDL,
        SUBSCRIPTIONS_TABLE_DDL,
        WEBHOOK_EVENTS_TABLE_DDL,
    ]
)
