"""Tests for the command-line interface."""

import json
from datetime import datetime

import pytest

from payments_recon.cli import (
    EXIT_FINDINGS,
    EXIT_OK,
    create_parser,
    main,
    parse_datetime,
    parse_range,
)


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Point the CLI at a throwaway SQLite file."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}")
    return tmp_path


@pytest.fixture
def statement_file(tmp_path, uid_factory):
    """A small CSV statement export."""
    path = tmp_path / "statement.csv"
    path.write_text(
        "uid,status,amount,currency,paid_at\n"
        f"{uid_factory(1)},successful,100.00,BYN,2024-01-15 10:00:00\n"
        f"{uid_factory(2)},pending,50.00,BYN,2024-01-15 11:00:00\n",
        encoding="utf-8",
    )
    return path


class TestParsing:
    """Tests for argument helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("2024-01-15", datetime(2024, 1, 15)),
        ("2024-01-15T10:30:00", datetime(2024, 1, 15, 10, 30)),
        ("2024-01-15 10:30:00", datetime(2024, 1, 15, 10, 30)),
    ])
    def test_parse_datetime(self, raw, expected):
        """Test the accepted datetime formats."""
        assert parse_datetime(raw) == expected

    def test_parse_datetime_invalid(self):
        """Test that unknown formats raise ValueError."""
        with pytest.raises(ValueError):
            parse_datetime("15/01/2024")

    def test_bare_end_date_covers_day(self):
        """Test that a date-only end runs to the last second of the day."""
        window = parse_range("2024-01-01", "2024-01-31")
        assert window.start == datetime(2024, 1, 1)
        assert window.end == datetime(2024, 1, 31, 23, 59, 59)

    def test_explicit_end_time_kept(self):
        """Test that an end with a time is used as given."""
        assert parse_range(None, "2024-01-31T12:00:00").end == datetime(2024, 1, 31, 12, 0)

    def test_format_choices(self):
        """Test that the parser rejects unknown report formats."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["reconcile", "file.csv", "--format", "xml"])


class TestMain:
    """Tests for the main entry point."""

    def test_no_command(self):
        """Test that running without a command prints help and fails."""
        assert main([]) == EXIT_FINDINGS

    def test_recover_needs_a_key(self):
        """Test that recover requires --uid or --tracking-id."""
        assert main(["recover"]) == EXIT_FINDINGS

    def test_bad_window(self, database):
        """Test that an unparseable date is a usage error."""
        assert main(["soft-cancel", "--start", "yesterday"]) == EXIT_FINDINGS

    def test_ingest_then_soft_cancel_preview(self, database, statement_file, capsys, uid_factory):
        """Test importing a statement and previewing a soft-cancel."""
        assert main(["ingest", str(statement_file)]) == EXIT_OK
        ingested = json.loads(capsys.readouterr().out)
        assert ingested["upsert"]["created"] == 2

        assert main(["soft-cancel", "--start", "2024-01-01", "--end", "2024-01-31"]) == EXIT_OK
        preview = json.loads(capsys.readouterr().out)
        assert preview["candidate_count"] == 1
        assert preview["candidates"][0]["uid"] == uid_factory(2)

    def test_reconcile_reports_findings(self, database, statement_file, tmp_path):
        """Test that rows missing from the ledger give exit code 1."""
        output = tmp_path / "report.txt"

        code = main(["reconcile", str(statement_file), "--format", "text", "--output", str(output)])

        assert code == EXIT_FINDINGS
        assert "Missing in Ledger: 2" in output.read_text(encoding="utf-8")

    def test_diagnose_clean_ledger(self, database, capsys):
        """Test that an empty ledger has no findings."""
        assert main(["diagnose"]) == EXIT_OK
        assert "LEDGER DIAGNOSTICS" in capsys.readouterr().out
