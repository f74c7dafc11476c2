"""Tests for the tobby command-line interface."""

import json

import pytest

from tobby.cli import main


@pytest.fixture(autouse=True)
def no_log_handler(monkeypatch):
    # Leave the root logger to pytest's own capture
    monkeypatch.setattr('tobby.config.configure_logging', lambda level=None: None)


@pytest.fixture
def fresh_db(tmp_path, monkeypatch):
    path = tmp_path / 'cli.db'
    monkeypatch.setenv('TOBBY_DB_PATH', str(path))
    return path


class TestInitDb:

    def test_creates_database(self, fresh_db, capsys):
        assert main(['init-db']) == 0
        assert fresh_db.exists()
        assert '[OK]' in capsys.readouterr().out

    def test_reset(self, fresh_db):
        main(['init-db'])
        main(['create-user', 'alice@example.com'])
        assert main(['init-db', '--reset']) == 0
        assert main(['create-user', 'alice@example.com']) == 0


class TestMigrate:

    def test_apply_then_list(self, db_path, capsys):
        assert main(['migrate']) == 0
        assert 'Applied 3 migration(s)' in capsys.readouterr().out

        assert main(['migrate']) == 0
        assert 'No pending migrations' in capsys.readouterr().out

        assert main(['migrate', '--list']) == 0
        out = capsys.readouterr().out
        assert 'Current schema version: 3' in out
        assert 'pending' not in out


class TestCreateUser:

    def test_prints_token(self, db_path, capsys):
        assert main(['create-user', 'bob@example.com']) == 0
        assert 'API token:' in capsys.readouterr().out

    def test_duplicate(self, db_path):
        main(['create-user', 'bob@example.com'])
        assert main(['create-user', 'bob@example.com']) == 1


class TestGenerate:

    def test_generate_for_date(self, engine, user, capsys):
        engine.add_recurring_transaction(
            user['user_id'], 'Gym', '40', 'withdrawal', 'weekly', {'weekday': 1}, start_date='2024-01-01')

        assert main(['generate', '--date', '2024-03-11']) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary['generated'] == 1

        assert main(['generate', '--date', '2024-03-12']) == 0
        summary = json.loads(capsys.readouterr().out)
        assert (summary['generated'], summary['skipped']) == (0, 1)

    def test_invalid_date(self, db_path):
        assert main(['generate', '--date', 'tomorrow']) == 2

    def test_fetch_failure_exits_non_zero(self, fresh_db, capsys):
        # No schema: the rules table is missing
        assert main(['generate', '--date', '2024-03-11']) == 1
        assert json.loads(capsys.readouterr().out)['success'] is False


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert 'usage' in capsys.readouterr().out
