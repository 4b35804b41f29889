"""
Unit tests for the clinicsync console script. uvicorn.run is replaced, so no server starts.
"""
import os

import uvicorn

from clinicsync import cli
from clinicsync.config import HOST, PORT


def _capture_run(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    for env_name in cli._ENV_FLAGS.values():
        # setenv first so the variable is restored (or removed) after the test
        monkeypatch.setenv(env_name, "")
        monkeypatch.delenv(env_name)
    return calls


def test_defaults_come_from_config(monkeypatch):
    calls = _capture_run(monkeypatch)

    cli.main([])

    app, kwargs = calls[0]
    assert app == "clinicsync.main:app"
    assert (kwargs["host"], kwargs["port"]) == (HOST, PORT)
    assert kwargs["reload"] is False
    assert kwargs["log_level"] == "info"
    assert "CLINICSYNC_API_URL" not in os.environ


def test_service_overrides_are_exported(monkeypatch, tmp_path):
    calls = _capture_run(monkeypatch)
    db_file = str(tmp_path / "login.db")

    cli.main([
        "--api-url", "http://clinic.test/api/v1",
        "--socket-url", "http://clinic.test",
        "--transports", "polling",
        "--db", db_file,
        "--port", "4100",
        "--log-level", "debug",
    ])

    assert os.environ["CLINICSYNC_API_URL"] == "http://clinic.test/api/v1"
    assert os.environ["CLINICSYNC_SOCKET_URL"] == "http://clinic.test"
    assert os.environ["CLINICSYNC_TRANSPORTS"] == "polling"
    assert os.environ["CLINICSYNC_DB"] == db_file
    assert calls[0][1]["port"] == 4100
    assert calls[0][1]["log_level"] == "debug"
