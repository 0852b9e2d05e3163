from autopress.db import connect_db
from autopress.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    try:
        apply_migrations(conn)
        apply_migrations(conn)

        rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
        versions = [row[0] for row in rows]
        expected = [version for version, _ in _get_migrations()]
        assert sorted(versions) == sorted(expected)
        assert len(versions) == len(set(versions))
    finally:
        conn.close()


def test_schema_has_pipeline_tables(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    try:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
    finally:
        conn.close()
    for name in (
        "campaigns",
        "campaign_backends",
        "queue_items",
        "provider_keys",
        "provider_stats",
        "health_alerts",
        "fetch_cache",
        "articles",
    ):
        assert name in tables
