"""Tests for the command line interface."""

from click.testing import CliRunner

from lightkeeper import cli
from lightkeeper.cli import main
from lightkeeper.context import build_context
from lightkeeper.database import Database

from conftest import FakeMailProvider, FakeTaskExtractor, extracted, make_message


def invoke(*args):
    return CliRunner().invoke(main, list(args))


def test_sync_requires_provider():
    result = invoke("sync")

    assert result.exit_code != 0
    assert "Calendar provider not configured" in result.output


def test_calendars_requires_provider():
    result = invoke("calendars")

    assert result.exit_code != 0
    assert "NYLAS_GRANT_ID" in result.output


def test_scan_email_requires_provider():
    result = invoke("scan-email")

    assert result.exit_code != 0
    assert "Email provider not configured" in result.output


def test_create_user_then_stats():
    created = invoke("create-user", "--email", "ada@example.com", "--name", "Ada",
                     "--role", "organisation", "--password", "password123")

    assert created.exit_code == 0, created.output
    assert "organisation ada@example.com" in created.output

    duplicate = invoke("create-user", "--email", "ada@example.com", "--name", "Ada",
                       "--password", "password123")
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output

    stats = invoke("stats", "--user-id", "1")
    assert stats.exit_code == 0, stats.output
    assert "Synced: 0" in stats.output


def test_scan_email_pass(tmp_path, test_config, monkeypatch):
    db = Database(tmp_path / "cli.db")
    mail_provider = FakeMailProvider([make_message("msg-1", subject="Report")])
    extractor = FakeTaskExtractor({"Report": extracted()})
    monkeypatch.setattr(cli, "build_context", lambda: build_context(
        config=test_config, db=db, mail_provider=mail_provider, extractor=extractor,
    ))

    created = invoke("create-user", "--email", "ada@example.com", "--name", "Ada",
                     "--password", "password123")
    assert created.exit_code == 0, created.output

    result = invoke("scan-email")

    assert result.exit_code == 0, result.output
    assert "Email scan pass" in result.output
    assert "1 tasks created from 1 emails for 1 users" in result.output
    assert mail_provider.closed is True
