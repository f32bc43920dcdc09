"""Tests for the run.py entrypoint commands."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

import run
from catalog_admin.bootstrap import build_services


runner = CliRunner()


@pytest.fixture()
def cli_config(temp_config, monkeypatch):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    return temp_config


def test_serve_builds_app_with_normalized_root(monkeypatch, tmp_path):
    captured = {}
    config = SimpleNamespace(storage_root=tmp_path)

    monkeypatch.setattr(run, "initialize_app", lambda: config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "build_services", lambda app_config: "services")

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(services, config, root_path):
        captured["create_app"] = (services, config, root_path)
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="admin/")

    assert captured["create_app"] == ("services", config, "/admin")
    assert captured["config_kwargs"]["root_path"] == "/admin"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["server_run"] is True
    assert dummy_app.state.server is captured["server_instance"]


def test_enqueue_claim_and_cancel_commands(cli_config):
    services = build_services(cli_config)
    course_id = services.catalog.add_course("Film Theory", r2_dir="film-theory")

    queued = runner.invoke(run.cli, ["enqueue", str(course_id), "3"])
    assert queued.exit_code == 0
    assert "Queued job 1." in queued.output

    duplicate = runner.invoke(run.cli, ["enqueue", str(course_id), "3"])
    assert duplicate.exit_code == 1
    assert "Job already exists" in duplicate.output

    claimed = runner.invoke(run.cli, ["claim-next"])
    assert claimed.exit_code == 0
    assert '"status": "running"' in claimed.output

    assert "No pending job." in runner.invoke(run.cli, ["claim-next"]).output

    cancelled = runner.invoke(run.cli, ["cancel", "1"])
    assert cancelled.exit_code == 0
    assert "Job 1 cancelled." in cancelled.output

    refused = runner.invoke(run.cli, ["cancel", "1"])
    assert refused.exit_code == 1
    assert "Cannot cancel job with status: failed" in refused.output

    usage = runner.invoke(run.cli, ["cancel", "--help"])
    assert "pending or running" in usage.output


def test_duplicates_merge_and_reset_commands(cli_config):
    services = build_services(cli_config)
    director_id = services.catalog.add_entity("directors", "Tarkovsky")
    film_id = services.catalog.add_entity("films", "Tarkovsky")

    listing = runner.invoke(run.cli, ["duplicates"])
    assert listing.exit_code == 0
    assert "Exact matches: 1" in listing.output
    assert f"films#{film_id} Tarkovsky" in listing.output

    merged = runner.invoke(
        run.cli,
        ["merge", "directors", str(director_id), "films", str(film_id)],
    )
    assert merged.exit_code == 0
    assert f"Merged films#{film_id} into directors#{director_id}" in merged.output

    failed = runner.invoke(
        run.cli,
        ["merge", "directors", str(director_id), "directors", str(director_id)],
    )
    assert failed.exit_code == 1

    reset = runner.invoke(run.cli, ["reset-history"])
    assert "Removed 1 merge decisions." in reset.output


def test_restore_command(cli_config):
    services = build_services(cli_config)
    book_id = services.catalog.add_entity("books", "Sculpting in Time")
    backup_id = services.recovery.soft_delete("books", book_id)

    restored = runner.invoke(run.cli, ["restore", str(backup_id)])
    assert restored.exit_code == 0
    assert f"Restored backup {backup_id} as #" in restored.output

    missing = runner.invoke(run.cli, ["restore", str(backup_id)])
    assert missing.exit_code == 1
    assert "Backup not found" in missing.output
