"""Tests for frequency config parsing and RecurringRule."""

import datetime
import json
from decimal import Decimal

import pytest

from tobby.models import (
    BiweeklyConfig,
    MonthlyConfig,
    RecurringRule,
    UnrecognizedFrequency,
    WeeklyConfig,
    YearlyConfig,
    default_frequency_config,
    parse_frequency_config,
)


class TestParseFrequencyConfig:

    def test_monthly(self):
        assert parse_frequency_config('monthly', {'day': 15}) == MonthlyConfig(day=15)

    def test_biweekly(self):
        assert parse_frequency_config('biweekly', {'days': [1, 15]}) == BiweeklyConfig(days=(1, 15))

    def test_weekly(self):
        assert parse_frequency_config('weekly', {'weekday': 0}) == WeeklyConfig(weekday=0)

    def test_yearly(self):
        assert parse_frequency_config('yearly', {'month': 2, 'day': 29}) == YearlyConfig(month=2, day=29)

    def test_json_text(self):
        assert parse_frequency_config('monthly', '{"day": 5}') == MonthlyConfig(day=5)

    def test_unknown_type_is_kept(self):
        config = parse_frequency_config('daily', {'every': 1})
        assert isinstance(config, UnrecognizedFrequency)
        assert config.frequency_type == 'daily'

    @pytest.mark.parametrize('frequency_type, raw', [
        ('monthly', {'day': 0}),
        ('monthly', {'day': 32}),
        ('monthly', {}),
        ('monthly', {'day': '15'}),
        ('monthly', {'day': True}),
        ('weekly', {'weekday': 7}),
        ('yearly', {'month': 13, 'day': 1}),
        ('biweekly', {'days': [1]}),
        ('biweekly', {'days': [10, 10]}),
        ('biweekly', {'days': [1, 40]}),
        ('monthly', 'not json'),
    ])
    def test_invalid_configs(self, frequency_type, raw):
        with pytest.raises(ValueError):
            parse_frequency_config(frequency_type, raw)

    def test_to_dict(self):
        assert BiweeklyConfig(days=(1, 15)).to_dict() == {'days': [1, 15]}
        assert YearlyConfig(month=3, day=1).to_dict() == {'month': 3, 'day': 1}


class TestDefaultFrequencyConfig:

    def test_defaults(self):
        assert default_frequency_config('monthly') == MonthlyConfig(day=1)
        assert default_frequency_config('biweekly') == BiweeklyConfig(days=(1, 15))

    def test_unknown(self):
        with pytest.raises(ValueError):
            default_frequency_config('hourly')


def rule_row(**overrides):
    row = {
        'id': 7,
        'user_id': 1,
        'description': 'Gym',
        'amount': '49.90',
        'transaction_type': 'withdrawal',
        'frequency_type': 'weekly',
        'frequency_config': json.dumps({'weekday': 2}),
        'start_date': '2024-01-01',
        'end_date': None,
        'is_active': 1,
        'last_generated_date': None,
        'created_at': '2024-01-01 10:00:00',
        'updated_at': '2024-01-01 10:00:00',
    }
    row.update(overrides)
    return row


class TestRecurringRule:

    def test_from_row(self):
        rule = RecurringRule.from_row(rule_row())
        assert rule.amount == Decimal('49.90')
        assert rule.frequency_config == WeeklyConfig(weekday=2)
        assert rule.start_date == datetime.date(2024, 1, 1)
        assert rule.end_date is None
        assert rule.is_active is True

    def test_malformed_config_becomes_unrecognized(self, caplog):
        rule = RecurringRule.from_row(rule_row(frequency_config='{"weekday": 9}'))
        assert isinstance(rule.frequency_config, UnrecognizedFrequency)
        assert 'never generate' in caplog.text

    def test_is_in_window(self):
        rule = RecurringRule.from_row(rule_row(end_date='2024-06-30'))
        assert not rule.is_in_window(datetime.date(2023, 12, 31))
        assert rule.is_in_window(datetime.date(2024, 1, 1))
        assert rule.is_in_window(datetime.date(2024, 6, 30))
        assert not rule.is_in_window(datetime.date(2024, 7, 1))

    def test_open_ended_window(self):
        rule = RecurringRule.from_row(rule_row())
        assert rule.is_in_window(datetime.date(2099, 1, 1))

    def test_to_dict(self):
        data = RecurringRule.from_row(rule_row(last_generated_date='2024-03-12')).to_dict()
        assert data['frequency_config'] == {'weekday': 2}
        assert data['last_generated_date'] == '2024-03-12'
        assert data['start_date'] == '2024-01-01'
