"""Tests for the typer CLI."""

import json
from pathlib import Path

from typer.testing import CliRunner

from blobtables.cli import app

runner = CliRunner()


def _last_line(output: str) -> str:
    return output.strip().splitlines()[-1]


def _invoke(db_path: Path, *args: str):
    return runner.invoke(app, ["--db", str(db_path), "--database-id", "db-1", *args])


class TestCli:
    """Tests for CLI commands against a temporary SQLite file."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "blobtables" in result.output

    def test_create_insert_and_query(self, tmp_path: Path) -> None:
        db_path = tmp_path / "blobs.db"
        created = _invoke(
            db_path,
            "create-table",
            "users",
            "--column",
            '{"key": "email", "type": "string", "unique": true}',
            "--column",
            '{"key": "age", "type": "integer"}',
        )
        assert created.exit_code == 0, created.output
        table_id = _last_line(created.output)

        for email, age in [("a@x.com", "40"), ("b@x.com", "12")]:
            inserted = _invoke(db_path, "insert", table_id, json.dumps({"email": email, "age": age}))
            assert inserted.exit_code == 0, inserted.output

        queried = _invoke(db_path, "query", table_id, "--filter", "age:gte:18", "--sort", "email:desc")

        assert queried.exit_code == 0, queried.output
        result = json.loads(_last_line(queried.output))
        assert result["total"] == 1
        assert result["totalPages"] == 1
        assert result["data"][0]["email"] == "a@x.com"
        assert result["data"][0]["age"] == 40

    def test_duplicate_unique_value_fails(self, tmp_path: Path) -> None:
        db_path = tmp_path / "blobs.db"
        table_id = _last_line(
            _invoke(db_path, "create-table", "users", "-c", '{"key": "email", "type": "string", "unique": true}').output
        )

        assert _invoke(db_path, "insert", table_id, '{"email": "a@x.com"}').exit_code == 0
        duplicate = _invoke(db_path, "insert", table_id, '{"email": "a@x.com"}')

        assert duplicate.exit_code == 1
        assert "Unique constraint failed for field 'email'" in duplicate.output

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        db_path = tmp_path / "blobs.db"
        table_id = _last_line(_invoke(db_path, "create-table", "users", "-c", '{"key": "age", "type": "integer"}').output)

        result = _invoke(db_path, "insert", table_id, '{"age": "old"}')

        assert result.exit_code == 1
        assert "age:" in result.output

    def test_check_reports_problems(self, tmp_path: Path) -> None:
        db_path = tmp_path / "blobs.db"
        table_id = _last_line(
            _invoke(db_path, "create-table", "users", "-c", '{"key": "email", "type": "string", "unique": true}').output
        )
        _invoke(db_path, "insert", table_id, '{"email": "a@x.com"}')

        clean = _invoke(db_path, "check", table_id, '{"email": "b@x.com"}')
        taken = _invoke(db_path, "check", table_id, '{"email": "a@x.com"}')

        assert clean.exit_code == 0
        assert json.loads(_last_line(clean.output)) == []
        assert taken.exit_code == 1
        assert json.loads(_last_line(taken.output))[0]["code"] == "unique"

    def test_column_commands_and_delete(self, tmp_path: Path) -> None:
        db_path = tmp_path / "blobs.db"
        table_id = _last_line(_invoke(db_path, "create-table", "notes").output)
        doc = json.loads(_last_line(_invoke(db_path, "insert", table_id, '{"title": "x"}').output))

        added = _invoke(db_path, "add-column", table_id, '{"key": "status", "type": "string", "default": "open"}')
        assert added.exit_code == 0, added.output

        updated = _invoke(db_path, "update", table_id, doc["$id"], '{"title": "y"}')
        assert json.loads(_last_line(updated.output))["status"] == "open"

        assert _invoke(db_path, "drop-column", table_id, "status").exit_code == 0
        deleted = _invoke(db_path, "delete", table_id, doc["$id"])

        assert "Deleted 1 documents" in deleted.output

    def test_missing_table_fails(self, tmp_path: Path) -> None:
        result = _invoke(tmp_path / "blobs.db", "insert", "nope", "{}")

        assert result.exit_code == 1
        assert "Table not found: nope" in result.output

    def test_invalid_json_is_rejected(self, tmp_path: Path) -> None:
        result = _invoke(tmp_path / "blobs.db", "insert", "nope", "{not json")

        assert result.exit_code != 0
