"""CLI smoke tests against a throwaway SQLite file."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from assemblyqc.cli import app
from assemblyqc.config import reset_config

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("ASSEMBLYQC_ACTOR", "inspector@site.test")
    reset_config()
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    return tmp_path


def test_create_element_and_stats(cli_db):
    created = runner.invoke(app, ["element", "create", "guid-1", "--mark", "C-1", "-p", "site"])
    duplicate = runner.invoke(app, ["element", "create", "guid-1", "-p", "site"])
    stats = runner.invoke(app, ["stats", "-p", "site"])

    assert created.exit_code == 0, created.output
    assert "guid-1" in created.output
    assert duplicate.exit_code == 1
    assert "duplicate_guid" in duplicate.output
    assert stats.exit_code == 0
    assert "Elements" in stats.output


def test_calibration_roundtrip(cli_db):
    for x, lon in ((0, "24.7536"), (100, "24.7550")):
        result = runner.invoke(
            app,
            ["calibration", "add-point", "--x", str(x), "--y", "0", "--lat", "59.437", "--lon", lon,
             "--accuracy", "0.02", "-p", "site"],
        )
        assert result.exit_code == 0, result.output

    # millimeter default: 50 m east of the first point
    converted = runner.invoke(app, ["calibration", "convert", "--x", "50000", "--y", "0", "-p", "site"])
    status = runner.invoke(app, ["calibration", "status", "-p", "site"])

    assert converted.exit_code == 0, converted.output
    assert "lon 24.754" in converted.output
    assert "calibrated" in status.output


def test_convert_without_calibration(cli_db):
    result = runner.invoke(app, ["calibration", "convert", "--x", "1", "--y", "1", "-p", "empty"])

    assert result.exit_code == 1
    assert "not_calibrated" in result.output


def test_convert_needs_coordinates(cli_db):
    result = runner.invoke(app, ["calibration", "convert"])

    assert result.exit_code == 2


def test_empty_queue(cli_db):
    result = runner.invoke(app, ["queue", "process"])

    assert result.exit_code == 0
    assert "0 processed" in result.output
