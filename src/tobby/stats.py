"""
Tobby - Transaction Aggregation Helpers

Pure functions over an in-memory list of transaction dicts, as returned by
TobbyEngine.get_transactions(). They back the dashboard numbers: a
transaction's share of its month, how often its description repeats, how much
its categories weigh overall, plus monthly summaries, analytics totals and the
budget gauge.

Nothing here touches the database; results are recomputed on every request.
"""

import calendar
import datetime
from decimal import Decimal

ZERO = Decimal('0')
OTHERS_LABEL = 'Others'


def _amount(tx):
    return Decimal(str(tx.get('amount') or 0))


def _tx_date(tx):
    value = tx.get('transaction_date')
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


def _normalize(text):
    return ' '.join((text or '').split()).casefold()


def _category_ids(tx):
    return {c['id'] for c in tx.get('categories') or []}


def _percentage(part, whole):
    if not whole:
        return 0.0
    return float(part / whole * 100)


# =============================================================================
# PER-TRANSACTION METRICS
# =============================================================================

def month_percentage(tx, month_total):
    """Share of month_total taken by tx, in percent (0 when the month is empty)."""
    return _percentage(_amount(tx), Decimal(str(month_total or 0)))


def description_frequency(tx, transactions):
    """How many transactions carry the same description as tx (case/space-insensitive)."""
    key = _normalize(tx.get('description'))
    return sum(1 for other in transactions if _normalize(other.get('description')) == key)


def category_trend(tx, transactions):
    """
    Percent of the total amount of transactions that share at least one
    category with tx. 0 when tx has no categories or the total is 0.
    """
    categories = _category_ids(tx)
    if not categories:
        return 0.0

    total = sum((_amount(t) for t in transactions), ZERO)
    shared = sum((_amount(t) for t in transactions if _category_ids(t) & categories), ZERO)
    return _percentage(shared, total)


def transaction_metrics(transactions):
    """
    Compute the three card metrics for every transaction.

    The month total for a transaction is the sum of transactions of the same
    type in the same calendar month.

    Returns:
        list[dict]: {'id', 'month_percentage', 'frequency', 'trend'} per transaction
    """
    month_totals = {}
    for tx in transactions:
        d = _tx_date(tx)
        key = (d.year, d.month, tx.get('transaction_type'))
        month_totals[key] = month_totals.get(key, ZERO) + _amount(tx)

    metrics = []
    for tx in transactions:
        d = _tx_date(tx)
        month_total = month_totals[(d.year, d.month, tx.get('transaction_type'))]
        metrics.append({
            'id': tx.get('id'),
            'month_percentage': month_percentage(tx, month_total),
            'frequency': description_frequency(tx, transactions),
            'trend': category_trend(tx, transactions),
        })
    return metrics


# =============================================================================
# FILTERING & SORTING
# =============================================================================

def filter_transactions(transactions, search=None, transaction_type=None, category_id=None,
                        date_from=None, date_to=None):
    """Apply the dashboard filters; every filter left as None is ignored."""
    result = list(transactions)

    if search:
        term = search.casefold()
        result = [
            t for t in result
            if term in (t.get('description') or '').casefold()
            or any(term in (c.get('name') or '').casefold() for c in t.get('categories') or [])
        ]
    if transaction_type and transaction_type != 'all':
        result = [t for t in result if t.get('transaction_type') == transaction_type]
    if category_id is not None:
        result = [t for t in result if category_id in _category_ids(t)]
    if date_from:
        result = [t for t in result if _tx_date(t) >= date_from]
    if date_to:
        result = [t for t in result if _tx_date(t) <= date_to]

    return result


SORT_KEYS = {
    'date': lambda t: (_tx_date(t), t.get('id') or 0),
    'amount': _amount,
    'description': lambda t: _normalize(t.get('description')),
}


def sort_transactions(transactions, key='date', descending=True):
    if key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key '{key}'. Use one of: {', '.join(SORT_KEYS)}")
    return sorted(transactions, key=SORT_KEYS[key], reverse=descending)


# =============================================================================
# SUMMARIES
# =============================================================================

def monthly_summary(transactions, year, month, today=None):
    """
    Totals for one calendar month.

    The daily average divides expenses by the days elapsed so far when the
    month is the current one, and by the length of the month otherwise.
    """
    today = today or datetime.date.today()
    month_txs = [t for t in transactions if (_tx_date(t).year, _tx_date(t).month) == (year, month)]
    expense_txs = [t for t in month_txs if t.get('transaction_type') == 'withdrawal']
    income_txs = [t for t in month_txs if t.get('transaction_type') == 'deposit']

    expenses = sum((_amount(t) for t in expense_txs), ZERO)
    income = sum((_amount(t) for t in income_txs), ZERO)

    if (today.year, today.month) == (year, month):
        days = today.day
    else:
        days = calendar.monthrange(year, month)[1]

    biggest = None
    for t in expense_txs:
        if biggest is None or _amount(t) > _amount(biggest):
            biggest = t

    category_totals = {}
    for t in expense_txs:
        for c in t.get('categories') or []:
            category_totals[c['name']] = category_totals.get(c['name'], ZERO) + _amount(t)
    top_categories = sorted(category_totals.items(), key=lambda item: item[1], reverse=True)[:5]

    return {
        'month': f"{year:04d}-{month:02d}",
        'expenses': expenses,
        'income': income,
        'balance': income - expenses,
        'expense_count': len(expense_txs),
        'income_count': len(income_txs),
        'avg_per_day': (expenses / days).quantize(Decimal('0.01')),
        'biggest_expense': biggest,
        'top_categories': [{'name': name, 'total': total} for name, total in top_categories],
    }


def totals_by_description(transactions, transaction_type='withdrawal'):
    totals = {}
    for t in transactions:
        if transaction_type and t.get('transaction_type') != transaction_type:
            continue
        label = ' '.join((t.get('description') or '').split()) or OTHERS_LABEL
        entry = totals.setdefault(_normalize(label), {
            'description': label, 'transaction_count': 0, 'total_amount': ZERO,
        })
        entry['transaction_count'] += 1
        entry['total_amount'] += _amount(t)
    return sorted(totals.values(), key=lambda e: e['total_amount'], reverse=True)


def totals_by_month(transactions, months=6, today=None, transaction_type='withdrawal'):
    """Per-month totals for the last `months` months, oldest first, empty months as 0."""
    today = today or datetime.date.today()
    keys = []
    year, month = today.year, today.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    keys.reverse()

    totals = dict.fromkeys(keys, ZERO)
    for t in transactions:
        if transaction_type and t.get('transaction_type') != transaction_type:
            continue
        key = _tx_date(t).strftime('%Y-%m')
        if key in totals:
            totals[key] += _amount(t)
    return [{'month': key, 'total': totals[key]} for key in keys]


def group_by_day(transactions, limit=10):
    """Timeline of the `limit` most recently created transactions grouped by creation day."""
    recent = sorted(transactions, key=lambda t: str(t.get('created_at') or ''), reverse=True)[:limit]
    groups = []
    index = {}
    for t in recent:
        day = str(t.get('created_at') or t.get('transaction_date'))[:10]
        if day not in index:
            index[day] = {'date': day, 'transactions': [], 'total': ZERO}
            groups.append(index[day])
        index[day]['transactions'].append(t)
        index[day]['total'] += _amount(t)
    return groups


def budget_status(spent, budget):
    """
    Budget gauge for the month.

    Mood is 'happy' below 80% of the budget, 'neutral' below 100% and
    'worried' from there on. Without a budget the gauge is neutral at 0%.
    """
    spent = Decimal(str(spent or 0))
    budget = Decimal(str(budget or 0))

    if budget == 0:
        return {
            'budget': ZERO,
            'spent': spent,
            'remaining': ZERO,
            'percentage': 0.0,
            'variant': 'neutral',
            'is_over_budget': False,
        }

    percentage = _percentage(spent, budget)
    if percentage < 80:
        variant = 'happy'
    elif percentage < 100:
        variant = 'neutral'
    else:
        variant = 'worried'

    return {
        'budget': budget,
        'spent': spent,
        'remaining': budget - spent,
        'percentage': min(percentage, 100.0),
        'variant': variant,
        'is_over_budget': spent > budget,
    }
