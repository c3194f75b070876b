"""SQL queries for healing run storage."""

# Schema queries
CREATE_PROJECTS_TABLE = """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        api_key TEXT NOT NULL UNIQUE,
        owner_id TEXT,
        created_at TEXT NOT NULL
    )
"""

CREATE_TEST_RUNS_TABLE = """
    CREATE TABLE IF NOT EXISTS test_runs (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id),
        branch TEXT,
        commit_sha TEXT,
        triggered_by TEXT NOT NULL,
        status TEXT NOT NULL,
        total_tests INTEGER NOT NULL DEFAULT 0,
        passed_tests INTEGER NOT NULL DEFAULT 0,
        failed_tests INTEGER NOT NULL DEFAULT 0,
        healed_tests INTEGER NOT NULL DEFAULT 0,
        job_id TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        failure_reason TEXT
    )
"""

CREATE_TEST_RESULTS_TABLE = """
    CREATE TABLE IF NOT EXISTS test_results (
        run_id TEXT NOT NULL REFERENCES test_runs(id),
        test_name TEXT NOT NULL,
        outcome TEXT NOT NULL,
        reported_at TEXT NOT NULL,
        PRIMARY KEY (run_id, test_name)
    )
"""

CREATE_HEALING_EVENTS_TABLE = """
    CREATE TABLE IF NOT EXISTS healing_events (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES test_runs(id),
        test_name TEXT NOT NULL,
        test_file TEXT,
        original_selector TEXT NOT NULL,
        error_message TEXT NOT NULL DEFAULT '',
        snapshot_ref TEXT,
        selector_type TEXT NOT NULL,
        confidence REAL NOT NULL DEFAULT 0,
        healed_selector TEXT,
        new_selector_type TEXT,
        status TEXT NOT NULL,
        reason_code TEXT,
        strategy TEXT,
        element_path TEXT,
        candidates TEXT NOT NULL DEFAULT '[]',
        action_taken TEXT,
        applied_by TEXT,
        applied_at TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, test_name)
    )
"""

CREATE_SCREENSHOTS_TABLE = """
    CREATE TABLE IF NOT EXISTS screenshots (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES test_runs(id),
        test_name TEXT,
        kind TEXT NOT NULL,
        path TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_test_runs_project ON test_runs(project_id, started_at)",
    "CREATE INDEX IF NOT EXISTS idx_test_runs_commit ON test_runs(project_id, branch, commit_sha)",
    "CREATE INDEX IF NOT EXISTS idx_test_results_name ON test_results(test_name)",
    "CREATE INDEX IF NOT EXISTS idx_healing_events_run ON healing_events(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_screenshots_run ON screenshots(run_id)",
]

SCHEMA = [
    CREATE_PROJECTS_TABLE,
    CREATE_TEST_RUNS_TABLE,
    CREATE_TEST_RESULTS_TABLE,
    CREATE_HEALING_EVENTS_TABLE,
    CREATE_SCREENSHOTS_TABLE,
] + CREATE_INDEXES

RUN_COLUMNS = """
    id, project_id, branch, commit_sha, triggered_by, status,
    total_tests, passed_tests, failed_tests, healed_tests,
    job_id, started_at, finished_at, failure_reason
"""

EVENT_COLUMNS = """
    id, run_id, test_name, test_file, original_selector, error_message,
    snapshot_ref, selector_type, confidence, healed_selector, new_selector_type,
    status, reason_code, strategy, element_path, candidates,
    action_taken, applied_by, applied_at, created_at
"""

# Projects
INSERT_PROJECT = """
    INSERT INTO projects (id, name, api_key, owner_id, created_at)
    VALUES (?, ?, ?, ?, ?)
"""

SELECT_PROJECT_BY_ID = """
    SELECT id, name, api_key, owner_id, created_at FROM projects WHERE id = ?
"""

SELECT_PROJECT_BY_API_KEY = """
    SELECT id, name, api_key, owner_id, created_at FROM projects WHERE api_key = ?
"""

# Test runs
INSERT_TEST_RUN = f"""
    INSERT INTO test_runs ({RUN_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SELECT_TEST_RUN = f"""
    SELECT {RUN_COLUMNS} FROM test_runs WHERE id = ?
"""

SELECT_RUNS_FOR_PROJECT = f"""
    SELECT {RUN_COLUMNS} FROM test_runs
    WHERE project_id = ?
    ORDER BY started_at DESC, rowid DESC
    LIMIT ?
"""

SELECT_ACTIVE_RUN_FOR_COMMIT = f"""
    SELECT {RUN_COLUMNS} FROM test_runs
    WHERE project_id = ? AND branch IS ? AND commit_sha IS ?
      AND status IN ('PENDING', 'RUNNING')
    ORDER BY started_at DESC, rowid DESC
    LIMIT 1
"""

UPDATE_RUN_COUNTERS = """
    UPDATE test_runs SET
        total_tests = total_tests + 1,
        passed_tests = passed_tests + ?,
        failed_tests = failed_tests + ?,
        healed_tests = healed_tests + ?,
        status = CASE WHEN status = 'PENDING' THEN 'RUNNING' ELSE status END
    WHERE id = ?
"""

UPDATE_RUN_HEALED = """
    UPDATE test_runs SET healed_tests = healed_tests + 1 WHERE id = ?
"""

UPDATE_RUN_FINISHED = """
    UPDATE test_runs SET status = ?, finished_at = ?, failure_reason = ?
    WHERE id = ? AND status IN ('PENDING', 'RUNNING')
"""

# Test results
INSERT_TEST_RESULT = """
    INSERT INTO test_results (run_id, test_name, outcome, reported_at)
    VALUES (?, ?, ?, ?)
"""

SELECT_TEST_RESULT = """
    SELECT run_id, test_name, outcome, reported_at FROM test_results
    WHERE run_id = ? AND test_name = ?
"""

SELECT_RESULTS_FOR_RUN = """
    SELECT run_id, test_name, outcome, reported_at FROM test_results
    WHERE run_id = ?
    ORDER BY reported_at, rowid
"""

SELECT_TEST_HISTORY = """
    SELECT r.run_id, r.test_name, r.outcome, r.reported_at, e.id AS event_id
    FROM test_results r
    JOIN test_runs t ON t.id = r.run_id
    LEFT JOIN healing_events e ON e.run_id = r.run_id AND e.test_name = r.test_name
    WHERE t.project_id = ? AND r.test_name = ?
    ORDER BY r.reported_at DESC, r.rowid DESC
    LIMIT ?
"""

# Healing events
INSERT_HEALING_EVENT = f"""
    INSERT INTO healing_events ({EVENT_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SELECT_HEALING_EVENT = f"""
    SELECT {EVENT_COLUMNS} FROM healing_events WHERE id = ?
"""

SELECT_EVENT_FOR_TEST = f"""
    SELECT {EVENT_COLUMNS} FROM healing_events WHERE run_id = ? AND test_name = ?
"""

SELECT_EVENTS_FOR_RUN = f"""
    SELECT {EVENT_COLUMNS} FROM healing_events
    WHERE run_id = ?
    ORDER BY created_at, rowid
"""

UPDATE_EVENT_REVIEW = """
    UPDATE healing_events SET
        status = ?, healed_selector = ?, new_selector_type = ?, reason_code = ?,
        confidence = ?, element_path = ?, action_taken = ?, applied_by = ?, applied_at = ?
    WHERE id = ? AND status = ?
"""

# Screenshots
INSERT_SCREENSHOT = """
    INSERT INTO screenshots (id, run_id, test_name, kind, path, created_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""

SELECT_SCREENSHOTS_FOR_RUN = """
    SELECT id, run_id, test_name, kind, path, created_at FROM screenshots
    WHERE run_id = ?
    ORDER BY created_at, rowid
"""
