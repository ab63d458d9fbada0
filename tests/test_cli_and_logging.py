import json
import logging
import sys

from identity_reconciliation import cli
from identity_reconciliation.logging_config import JSONFormatter
from identity_reconciliation.stores.sqlite import SQLiteContactStore


def test_migrate_creates_schema(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    path = tmp_path / "migrated.db"

    cli.main(["migrate", "--database-url", f"sqlite:///{path}"])

    store = SQLiteContactStore(str(path))
    with store.transaction() as session:
        assert session.find_by_email("nobody@x.com").primary is None


def test_serve_runs_uvicorn_with_overrides(monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    calls = []

    import identity_reconciliation.main as main_module

    monkeypatch.setattr(main_module, "run", lambda host=None, port=None: calls.append((host, port)))

    cli.main(["serve", "--host", "127.0.0.1", "--port", "9001"])

    assert calls == [("127.0.0.1", 9001)]


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord(
        "identity_reconciliation.linking", logging.INFO, __file__, 10, "merged %s", (3,), None
    )
    record.cluster_id = 3

    payload = json.loads(JSONFormatter(service_name="svc").format(record))

    assert payload["message"] == "merged 3"
    assert payload["level"] == "INFO"
    assert payload["service"] == "svc"
    assert payload["extra"] == {"cluster_id": 3}
    assert "exception" not in payload


def test_json_formatter_serialises_exceptions():
    try:
        raise RuntimeError("db down")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

    payload = json.loads(JSONFormatter().format(record))

    assert payload["exception"]["type"] == "RuntimeError"
    assert payload["exception"]["message"] == "db down"
