"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency."""

SCHEMA_SQL = """
-- Authoritative backend log: one row per accepted event
CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    tree_id TEXT NOT NULL,
    server_version INTEGER NOT NULL,
    sequence_num INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    device_id TEXT NOT NULL DEFAULT 'local',
    event_type TEXT NOT NULL,
    intent TEXT NOT NULL DEFAULT 'edit',
    payload TEXT NOT NULL,
    UNIQUE (tree_id, server_version)
);

CREATE INDEX IF NOT EXISTS idx_events_tree_id ON events(tree_id);

-- Client side: unconfirmed local events awaiting transmission
CREATE TABLE IF NOT EXISTS pending_events (
    tree_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    event TEXT NOT NULL,
    PRIMARY KEY (tree_id, position)
);

CREATE TABLE IF NOT EXISTS sync_state (
    tree_id TEXT PRIMARY KEY,
    last_server_version INTEGER NOT NULL DEFAULT 0
);

-- Client side: local-only trees split off by a failed merge
CREATE TABLE IF NOT EXISTS forks (
    fork_tree_id TEXT PRIMARY KEY,
    tree_id TEXT NOT NULL,
    record TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_forks_tree_id ON forks(tree_id);
"""
