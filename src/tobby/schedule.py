"""
Tobby - Schedule Evaluator

Decides whether a recurring rule fires on a given calendar date. The caller
is responsible for only asking about active rules whose start/end window
contains the date; this module only matches the frequency pattern.

Days that don't exist in a month never match: a rule for day 31 skips
February, April, June, September and November, and a yearly rule for
February 29 only fires in leap years. There is no fallback to the last day
of the month.
"""

import datetime

from .models import (
    MonthlyConfig,
    BiweeklyConfig,
    WeeklyConfig,
    YearlyConfig,
)

WEEKDAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']
MONTH_NAMES = [
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December',
]


def sunday_based_weekday(day):
    """Weekday number with 0 = Sunday .. 6 = Saturday."""
    return (day.weekday() + 1) % 7


def should_generate_today(rule, today):
    """
    Return True if rule should produce a transaction on today.

    Args:
        rule (RecurringRule): rule with a parsed frequency_config
        today (date): the calendar date being evaluated

    Returns:
        bool: False for any frequency this evaluator doesn't recognise
    """
    if isinstance(today, datetime.datetime):
        today = today.date()

    config = rule.frequency_config

    if isinstance(config, MonthlyConfig):
        return today.day == config.day
    elif isinstance(config, BiweeklyConfig):
        return today.day in config.days
    elif isinstance(config, WeeklyConfig):
        return sunday_based_weekday(today) == config.weekday
    elif isinstance(config, YearlyConfig):
        return today.month == config.month and today.day == config.day
    else:
        # UnrecognizedFrequency or a config that doesn't belong to this module
        return False


def describe_frequency(rule):
    config = rule.frequency_config

    if isinstance(config, MonthlyConfig):
        return f"Monthly - day {config.day}"
    elif isinstance(config, BiweeklyConfig):
        return f"Biweekly - days {', '.join(str(d) for d in config.days)}"
    elif isinstance(config, WeeklyConfig):
        return f"Weekly - {WEEKDAY_NAMES[config.weekday]}"
    elif isinstance(config, YearlyConfig):
        return f"Yearly - {MONTH_NAMES[config.month - 1]} {config.day}"
    else:
        return str(rule.frequency_type)
