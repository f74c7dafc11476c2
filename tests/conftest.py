"""Shared fixtures: every test gets its own throw-away SQLite database."""

import datetime
from decimal import Decimal

import pytest

from tobby.engine import TobbyEngine
from tobby.models import RecurringRule, parse_frequency_config
from tobby.setup_sqlite import create_database

CRON_SECRET = 'test-cron-secret'


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / 'tobby.db'
    monkeypatch.setenv('TOBBY_DB_PATH', str(path))
    monkeypatch.setenv('CRON_SECRET', CRON_SECRET)
    monkeypatch.delenv('TOBBY_TIMEZONE', raising=False)
    assert create_database(path)
    return path


@pytest.fixture
def engine(db_path):
    return TobbyEngine(db_path)


@pytest.fixture
def user(engine):
    ok, _, user = engine.create_user('alice@example.com')
    assert ok
    return user


@pytest.fixture
def client(db_path):
    from tobby.api import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def auth_headers(user):
    return {'Authorization': f"Bearer {user['api_token']}"}


@pytest.fixture
def cron_headers():
    return {'Authorization': f"Bearer {CRON_SECRET}"}


def make_rule(frequency_type, frequency_config, rule_id=1, **overrides):
    """Build an in-memory rule without touching the database."""
    data = dict(
        id=rule_id,
        user_id=1,
        description='Rent',
        amount=Decimal('1200.00'),
        transaction_type='withdrawal',
        frequency_type=frequency_type,
        frequency_config=parse_frequency_config(frequency_type, frequency_config),
        start_date=datetime.date(2020, 1, 1),
    )
    data.update(overrides)
    return RecurringRule(**data)
