from autopress.db import connect_db
from autopress.models import NewQueueItem
from autopress.queue import WorkQueue
from autopress.services import campaign_service
from autopress.worker import build_parser, run_once


def test_run_once_on_empty_database(config):
    result = run_once(config)
    assert result["discovery"]["total"] == 0
    assert result["processing"]["processed"] == 0
    assert result["sweep"]["reclaimed"] == 0


def test_run_once_reclaims_and_fails_unconfigured_items(config):
    conn = connect_db(config.paths.state_db)
    try:
        campaign_service.upsert_campaign(conn, {"id": "c1", "name": "Paused", "type": "youtube", "status": "paused"})
        queue = WorkQueue(conn)
        item_id = queue.enqueue(NewQueueItem("c1", "https://www.youtube.com/watch?v=1", "youtube", title="V")).item_id
    finally:
        conn.close()

    result = run_once(config, limit=1)

    assert result["discovery"]["total"] == 0
    assert result["processing"]["failed"] == 1
    conn = connect_db(config.paths.state_db)
    try:
        assert WorkQueue(conn).get(item_id).error_message.startswith("no_configuration")
    finally:
        conn.close()


def test_parser_defaults(monkeypatch):
    monkeypatch.setenv("AP_WORKER_SLEEP", "15")
    args = build_parser().parse_args(["--once"])
    assert args.once is True
    assert args.sleep == 15
    assert args.limit is None
