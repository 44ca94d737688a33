"""Unit tests for the import-file command (in-memory directory, no DNS)."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

import access_import.cli as cli_module
from access_import.cli import cli


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch, checker):
    monkeypatch.setattr(cli_module, "DomainValidator", lambda *a, **kw: checker)


def _write_csv(path, rows):
    header = ",".join(rows[0])
    body = "\n".join(",".join(str(v) for v in row.values()) for row in rows)
    path.write_text(f"{header}\n{body}\n", encoding="utf-8")
    return path


class TestImportFile:
    def test_clean_file(self, tmp_path, row_factory):
        source = _write_csv(tmp_path / "people.csv", [
            row_factory(cards="1001"),
            row_factory(first="Bob", last="Jones", email="bob@example.com", cards="1002"),
        ])
        result = CliRunner().invoke(cli, [
            "import-file", str(source),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "run-1",
        ])

        assert result.exit_code == 0, result.output
        assert "[run-1] Done:" in result.output
        report = json.loads((tmp_path / "reports" / "run-1.json").read_text())
        assert report["status"] == "Done!"
        assert report["report"] == {
            "recordsCreated": 2, "recordsUpdated": 0, "credentialCount": 0,
        }
        assert report["errors"] == []

    def test_row_errors_exit_nonzero(self, tmp_path, row_factory):
        source = _write_csv(tmp_path / "people.csv", [
            row_factory(),
            row_factory(first="", email="nobody@example.com"),
        ])
        result = CliRunner().invoke(cli, [
            "import-file", str(source),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "run-2",
        ])

        assert result.exit_code == 1
        report = json.loads((tmp_path / "reports" / "run-2.json").read_text())
        assert report["status"].startswith("File contains errors.")
        assert report["errors"] == [
            "Validation error in file people.csv: Invalid first or last name."
        ]
        assert report["report"]["recordsCreated"] == 1

    def test_unsupported_format(self, tmp_path):
        source = tmp_path / "people.txt"
        source.write_text("hello")
        result = CliRunner().invoke(cli, [
            "import-file", str(source),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "run-3",
        ])
        assert result.exit_code == 1
        assert "Unsupported file format." in result.output

    def test_bad_config_is_usage_error(self, tmp_path, row_factory):
        config = tmp_path / "bad.yml"
        config.write_text("nope: 1\n")
        source = _write_csv(tmp_path / "people.csv", [row_factory()])
        result = CliRunner().invoke(cli, ["import-file", str(source), "--config", str(config)])
        assert result.exit_code == 1
        assert "Unknown setting 'nope'" in result.output
