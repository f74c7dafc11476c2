"""
Tobby - Recurring Rule Models

A recurring rule's schedule is stored as a frequency_type plus a JSON
frequency_config whose shape depends on the type:

    monthly   {"day": 1..31}
    biweekly  {"days": [d1, d2]}
    weekly    {"weekday": 0..6}        (0 = Sunday)
    yearly    {"month": 1..12, "day": 1..31}

Each shape is modelled as its own frozen dataclass. Anything that isn't one
of the four known types is kept as UnrecognizedFrequency so the evaluator can
refuse it explicitly.
"""

import json
import logging
import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple, Union

logger = logging.getLogger(__name__)

FREQUENCY_TYPES = ('monthly', 'biweekly', 'weekly', 'yearly')
TRANSACTION_TYPES = ('withdrawal', 'deposit')


@dataclass(frozen=True)
class MonthlyConfig:
    day: int
    frequency_type = 'monthly'

    def to_dict(self):
        return {'day': self.day}


@dataclass(frozen=True)
class BiweeklyConfig:
    days: Tuple[int, int]
    frequency_type = 'biweekly'

    def to_dict(self):
        return {'days': list(self.days)}


@dataclass(frozen=True)
class WeeklyConfig:
    weekday: int  # 0 = Sunday .. 6 = Saturday
    frequency_type = 'weekly'

    def to_dict(self):
        return {'weekday': self.weekday}


@dataclass(frozen=True)
class YearlyConfig:
    month: int
    day: int
    frequency_type = 'yearly'

    def to_dict(self):
        return {'month': self.month, 'day': self.day}


@dataclass(frozen=True)
class UnrecognizedFrequency:
    frequency_type: str
    raw: object = None

    def to_dict(self):
        return self.raw if isinstance(self.raw, dict) else {}


FrequencyConfig = Union[MonthlyConfig, BiweeklyConfig, WeeklyConfig, YearlyConfig, UnrecognizedFrequency]


def _int_in_range(raw, key, low, high):
    value = raw.get(key) if isinstance(raw, dict) else None
    # bool is an int subclass; a checkbox value is never a valid day
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer between {low} and {high}.")
    if not low <= value <= high:
        raise ValueError(f"'{key}' must be between {low} and {high}.")
    return value


def parse_frequency_config(frequency_type, raw):
    """
    Build the config variant for frequency_type from its raw dict form.

    Args:
        frequency_type (str): monthly, biweekly, weekly or yearly
        raw (dict | str): config as a dict or its JSON text

    Returns:
        FrequencyConfig: UnrecognizedFrequency for unknown types

    Raises:
        ValueError: known type whose config is missing or out of range
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValueError("Frequency config is not valid JSON.")

    if frequency_type == 'monthly':
        return MonthlyConfig(day=_int_in_range(raw, 'day', 1, 31))

    if frequency_type == 'biweekly':
        days = raw.get('days') if isinstance(raw, dict) else None
        if not isinstance(days, (list, tuple)) or len(days) != 2:
            raise ValueError("'days' must list exactly two days of the month.")
        first = _int_in_range({'days': days[0]}, 'days', 1, 31)
        second = _int_in_range({'days': days[1]}, 'days', 1, 31)
        if first == second:
            raise ValueError("The two biweekly days must be different.")
        return BiweeklyConfig(days=(first, second))

    if frequency_type == 'weekly':
        return WeeklyConfig(weekday=_int_in_range(raw, 'weekday', 0, 6))

    if frequency_type == 'yearly':
        return YearlyConfig(
            month=_int_in_range(raw, 'month', 1, 12),
            day=_int_in_range(raw, 'day', 1, 31),
        )

    return UnrecognizedFrequency(frequency_type=str(frequency_type), raw=raw)


def default_frequency_config(frequency_type):
    """Config a new rule starts with when the user picks a frequency type."""
    defaults = {
        'monthly': MonthlyConfig(day=1),
        'biweekly': BiweeklyConfig(days=(1, 15)),
        'weekly': WeeklyConfig(weekday=1),
        'yearly': YearlyConfig(month=1, day=1),
    }
    if frequency_type not in defaults:
        raise ValueError(f"Invalid frequency type. Must be one of: {', '.join(FREQUENCY_TYPES)}")
    return defaults[frequency_type]


def _parse_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value).split(' ')[0].split('T')[0])


@dataclass
class RecurringRule:
    id: int
    user_id: int
    description: str
    amount: Decimal
    transaction_type: str
    frequency_type: str
    frequency_config: FrequencyConfig
    start_date: datetime.date
    end_date: Optional[datetime.date] = None
    is_active: bool = True
    last_generated_date: Optional[datetime.date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        """Build a rule from a recurring_transactions row (sqlite3.Row or dict)."""
        data = dict(row)
        frequency_type = data['frequency_type']
        try:
            config = parse_frequency_config(frequency_type, data['frequency_config'])
        except ValueError as e:
            logger.warning(
                "[RULES] Rule %s has an unusable %s config (%s); it will never generate",
                data.get('id'), frequency_type, e,
            )
            config = UnrecognizedFrequency(frequency_type=frequency_type, raw=data['frequency_config'])

        return cls(
            id=data['id'],
            user_id=data['user_id'],
            description=data['description'],
            amount=Decimal(str(data['amount'])),
            transaction_type=data['transaction_type'],
            frequency_type=frequency_type,
            frequency_config=config,
            start_date=_parse_date(data['start_date']),
            end_date=_parse_date(data.get('end_date')),
            is_active=bool(data.get('is_active', 1)),
            last_generated_date=_parse_date(data.get('last_generated_date')),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )

    def is_in_window(self, day):
        """True when day lies within [start_date, end_date]."""
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'description': self.description,
            'amount': self.amount,
            'transaction_type': self.transaction_type,
            'frequency_type': self.frequency_type,
            'frequency_config': self.frequency_config.to_dict(),
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'is_active': self.is_active,
            'last_generated_date': self.last_generated_date.isoformat() if self.last_generated_date else None,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }
