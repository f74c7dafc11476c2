"""
Tobby - Flask REST API

This module exposes the Tobby engine over HTTP. Endpoints cover:

Scheduler:
- Daily recurring transaction generation (guarded by CRON_SECRET)

Expense Tracking:
- Transactions (CRUD, filtering, sorting, category assignment)
- Recurring transaction rules (CRUD, pause/resume, generation history)
- Categories (CRUD and suggestions from a description)
- Monthly budget
- Subscription plan and premium feature access

Analytics:
- Per-transaction metrics, monthly summary and budget gauge
- Totals by description, by month and a recent-activity timeline

Messaging Bot:
- One-time link tokens and chat redemption

Security:
- Identity is issued by an external provider; requests carry
  `Authorization: Bearer <api_token>`, resolved by a Flask-Login request_loader
- User data segregation (every engine call is scoped by current_user.id)
- CORS enabled for the web client
"""

import hmac
import logging
import datetime
from decimal import Decimal

from flask import Flask, abort, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS
from flask_login import LoginManager, UserMixin, login_required, current_user

from . import config, stats, subscription
from .engine import TobbyEngine, suggest_categories
from .generation import GenerationJob, RuleFetchError, JobTimeoutError
from .migration_runner import run_all_pending
from .models import FREQUENCY_TYPES, default_frequency_config
from .schedule import describe_frequency
from .setup_sqlite import create_database, get_db_path, verify_schema

logger = logging.getLogger(__name__)


class CustomJSONProvider(DefaultJSONProvider):
    """
    JSON provider for Decimal and date values.

    Converts:
    - Decimal to float
    - datetime and date to ISO 8601 strings
    """
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime.datetime, datetime.date)):
            return obj.isoformat()
        return super().default(obj)


# =============================================================================
# FLASK APPLICATION SETUP
# =============================================================================

app = Flask(__name__)
app.json = CustomJSONProvider(app)
app.config['SECRET_KEY'] = config.get_secret_key()

# The web client and the scheduler call from other origins
CORS(app)

if not get_db_path().exists():
    logger.info("[DB] Database not found - creating fresh database...")
    create_database()

if run_all_pending() < 0:
    logger.error("[MIGRATION] Pending migrations failed; the API may run on an outdated schema")

engine = TobbyEngine()

# --- FLASK-LOGIN SETUP ---
login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(success=False, message="Authorization required."), 401


class User(UserMixin):
    def __init__(self, id, email):
        self.id = id
        self.email = email


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip()
    return None


@login_manager.request_loader
def load_user_from_request(req):
    user_data = engine.get_user_by_token(_bearer_token())
    if user_data:
        return User(id=user_data['user_id'], email=user_data['email'])
    return None


def cron_required(func):
    """Allow the call only when it presents `Authorization: Bearer <CRON_SECRET>`."""
    def wrapper(*args, **kwargs):
        secret = config.get_cron_secret()
        if not secret:
            return jsonify({"success": False, "message": "CRON_SECRET is not configured."}), 403
        token = _bearer_token() or ''
        if not hmac.compare_digest(token.encode(), secret.encode()):
            return jsonify({"success": False, "message": "Unauthorized"}), 401
        return func(*args, **kwargs)
    wrapper.__name__ = func.__name__
    return wrapper


def _result(success, message, status_on_failure=None, **payload):
    """Translate an engine (success, message) pair into a JSON response."""
    if success:
        return jsonify({"success": True, "message": message, **payload})
    if status_on_failure is None:
        status_on_failure = 404 if "not found" in message.lower() else 400
    return jsonify({"success": False, "message": message}), status_on_failure


def _json_body():
    """Return the JSON object sent with the request, {} when there is none."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object.")
    return data


def _parse_date_arg(value, name):
    if not value:
        return None
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"'{name}' must be a date in YYYY-MM-DD format.")


def _rule_to_json(rule):
    data = rule.to_dict()
    data['schedule'] = describe_frequency(rule)
    return data


# --- SCHEDULER ROUTES ---

@app.route('/api/jobs/generate-recurring', methods=['POST'])
@cron_required
def generate_recurring_api():
    """Run the daily generation job. An optional {"date": "YYYY-MM-DD"} overrides today."""
    data = _json_body()
    try:
        day = _parse_date_arg(data.get('date'), 'date')
    except ValueError as e:
        return jsonify({"success": False, "message": str(e)}), 400

    try:
        summary = GenerationJob(engine).run(day)
    except RuleFetchError as e:
        return jsonify({"success": False, "error": f"Failed to fetch recurring transactions: {e}"}), 500
    except JobTimeoutError as e:
        body = e.summary.to_dict()
        body['error'] = str(e)
        return jsonify(body), 500

    return jsonify(summary.to_dict())


# --- RECURRING TRANSACTION ROUTES ---

@app.route('/api/recurring_transactions', methods=['GET'])
@login_required
def get_recurring_transactions_api():
    rules = engine.get_recurring_transactions(current_user.id)
    return jsonify([_rule_to_json(rule) for rule in rules])


@app.route('/api/recurring_transactions', methods=['POST'])
@login_required
def add_recurring_transaction_api():
    data = _json_body()
    description = data.get('description')
    amount = data.get('amount')
    transaction_type = data.get('transaction_type')
    frequency_type = data.get('frequency_type')

    if not all([description, amount, transaction_type, frequency_type]):
        return jsonify({"success": False, "message": "Description, amount, type and frequency are required."}), 400

    frequency_config = data.get('frequency_config')
    if frequency_config is None and frequency_type in FREQUENCY_TYPES:
        frequency_config = default_frequency_config(frequency_type).to_dict()

    success, message, rule_id = engine.add_recurring_transaction(
        user_id=current_user.id,
        description=description,
        amount=amount,
        transaction_type=transaction_type,
        frequency_type=frequency_type,
        frequency_config=frequency_config,
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
    )
    if success:
        return jsonify({"success": True, "message": message, "id": rule_id}), 201
    return jsonify({"success": False, "message": message}), 400


@app.route('/api/recurring_transactions/<int:rule_id>', methods=['PUT', 'DELETE'])
@login_required
def manage_recurring_transaction_api(rule_id):
    if request.method == 'PUT':
        data = _json_body()
        success, message = engine.update_recurring_transaction(
            user_id=current_user.id,
            rule_id=rule_id,
            description=data.get('description'),
            amount=data.get('amount'),
            transaction_type=data.get('transaction_type'),
            frequency_type=data.get('frequency_type'),
            frequency_config=data.get('frequency_config'),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
        )
        return _result(success, message)

    success, message = engine.delete_recurring_transaction(current_user.id, rule_id)
    return _result(success, message)


@app.route('/api/recurring_transactions/<int:rule_id>/toggle', methods=['POST'])
@login_required
def toggle_recurring_transaction_api(rule_id):
    """Pause or resume a rule. Without an explicit is_active the state flips."""
    rule = engine.get_recurring_transaction(current_user.id, rule_id)
    if not rule:
        return jsonify({"success": False, "message": "Recurring transaction not found."}), 404

    data = _json_body()
    is_active = data.get('is_active')
    if is_active is None:
        is_active = not rule.is_active
    elif not isinstance(is_active, bool):
        return jsonify({"success": False, "message": "'is_active' must be true or false."}), 400

    success, message = engine.set_recurring_active(current_user.id, rule_id, is_active)
    return _result(success, message, is_active=is_active)


@app.route('/api/recurring_transactions/<int:rule_id>/logs', methods=['GET'])
@login_required
def get_generation_logs_api(rule_id):
    if not engine.get_recurring_transaction(current_user.id, rule_id):
        return jsonify({"success": False, "message": "Recurring transaction not found."}), 404
    return jsonify(engine.get_generation_logs(current_user.id, rule_id))


# --- TRANSACTION ROUTES ---

@app.route('/api/transactions', methods=['GET'])
@login_required
def get_transactions_api():
    """List transactions with optional search, type, category, date range and sort."""
    try:
        date_from = _parse_date_arg(request.args.get('date_from'), 'date_from')
        date_to = _parse_date_arg(request.args.get('date_to'), 'date_to')
        transactions = stats.filter_transactions(
            engine.get_transactions(current_user.id),
            search=request.args.get('search'),
            transaction_type=request.args.get('type'),
            category_id=request.args.get('category_id', type=int),
            date_from=date_from,
            date_to=date_to,
        )
        transactions = stats.sort_transactions(
            transactions,
            key=request.args.get('sort', 'date'),
            descending=request.args.get('order', 'desc') != 'asc',
        )
    except ValueError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    return jsonify(transactions)


@app.route('/api/transactions', methods=['POST'])
@login_required
def add_transaction_api():
    data = _json_body()
    if not all([data.get('amount'), data.get('transaction_type')]):
        return jsonify({"success": False, "message": "Amount and type are required."}), 400

    success, message, transaction_id = engine.add_transaction(
        user_id=current_user.id,
        description=data.get('description'),
        amount=data.get('amount'),
        transaction_type=data.get('transaction_type'),
        transaction_date=data.get('transaction_date'),
        category_ids=data.get('category_ids'),
    )
    if success:
        return jsonify({"success": True, "message": message, "id": transaction_id}), 201
    return jsonify({"success": False, "message": message}), 400


@app.route('/api/transactions/<int:transaction_id>', methods=['PUT', 'DELETE'])
@login_required
def manage_transaction_api(transaction_id):
    if request.method == 'PUT':
        data = _json_body()
        success, message = engine.update_transaction(
            user_id=current_user.id,
            transaction_id=transaction_id,
            description=data.get('description'),
            amount=data.get('amount'),
            transaction_type=data.get('transaction_type'),
            transaction_date=data.get('transaction_date'),
        )
        return _result(success, message)

    success, message = engine.delete_transaction(current_user.id, transaction_id)
    return _result(success, message)


@app.route('/api/transactions/<int:transaction_id>/categories', methods=['PUT'])
@login_required
def set_transaction_categories_api(transaction_id):
    data = _json_body()
    category_ids = data.get('category_ids')
    if not isinstance(category_ids, list):
        return jsonify({"success": False, "message": "category_ids must be a list."}), 400
    success, message = engine.set_transaction_categories(current_user.id, transaction_id, category_ids)
    return _result(success, message)


@app.route('/api/transactions/stats', methods=['GET'])
@login_required
def get_transaction_stats_api():
    """Card metrics for every transaction plus this month's summary and budget gauge."""
    today = config.today()
    transactions = engine.get_transactions(current_user.id)
    summary = stats.monthly_summary(transactions, today.year, today.month, today=today)
    budget = stats.budget_status(summary['expenses'], engine.get_monthly_budget(current_user.id))
    return jsonify({
        "metrics": stats.transaction_metrics(transactions),
        "summary": summary,
        "budget": budget,
    })


@app.route('/api/analytics', methods=['GET'])
@login_required
def get_analytics_api():
    months = request.args.get('months', 6, type=int)
    if months < 1:
        return jsonify({"success": False, "message": "months must be at least 1."}), 400

    transactions = engine.get_transactions(current_user.id)
    return jsonify({
        "by_description": stats.totals_by_description(transactions),
        "by_month": stats.totals_by_month(transactions, months=months, today=config.today()),
        "recent_activity": stats.group_by_day(transactions),
        "most_used_categories": engine.get_most_used_categories(current_user.id),
    })


# --- CATEGORY ROUTES ---

@app.route('/api/categories', methods=['GET'])
@login_required
def get_categories_api():
    return jsonify(engine.get_categories(current_user.id))


@app.route('/api/categories', methods=['POST'])
@login_required
def add_category_api():
    data = _json_body()
    success, message, category_id = engine.add_category(
        user_id=current_user.id,
        name=data.get('name'),
        color=data.get('color'),
        icon=data.get('icon'),
    )
    if success:
        return jsonify({"success": True, "message": message, "id": category_id}), 201
    status_code = 409 if "already exists" in message else 400
    return jsonify({"success": False, "message": message}), status_code


@app.route('/api/categories/<int:category_id>', methods=['PUT', 'DELETE'])
@login_required
def manage_category_api(category_id):
    if request.method == 'PUT':
        data = _json_body()
        success, message = engine.update_category(
            user_id=current_user.id,
            category_id=category_id,
            name=data.get('name'),
            color=data.get('color'),
            icon=data.get('icon'),
        )
        if not success and "already exists" in message:
            return jsonify({"success": False, "message": message}), 409
        return _result(success, message)

    success, message = engine.delete_category(current_user.id, category_id)
    return _result(success, message)


@app.route('/api/categories/suggest', methods=['GET'])
@login_required
def suggest_categories_api():
    description = request.args.get('description', '')
    return jsonify(suggest_categories(description, engine.get_categories(current_user.id)))


# --- BUDGET ROUTES ---

@app.route('/api/budget', methods=['GET'])
@login_required
def get_budget_api():
    return jsonify({"monthly_budget": engine.get_monthly_budget(current_user.id)})


@app.route('/api/budget', methods=['PUT'])
@login_required
def set_budget_api():
    data = _json_body()
    if data.get('monthly_budget') is None:
        return jsonify({"success": False, "message": "monthly_budget is required."}), 400
    success, message = engine.set_monthly_budget(current_user.id, data['monthly_budget'])
    return _result(success, message)


# --- SUBSCRIPTION ROUTES ---

@app.route('/api/subscription', methods=['GET'])
@login_required
def get_subscription_api():
    """Current plan and which features it unlocks. Billing itself happens on the payment provider."""
    sub = engine.get_user_subscription(current_user.id)
    return jsonify({
        "subscription": sub,
        "is_premium": subscription.is_premium_user(sub),
        "features": subscription.feature_access(sub),
    })


# --- TELEGRAM LINKING ROUTES ---

@app.route('/api/telegram/link_token', methods=['POST'])
@login_required
def create_link_token_api():
    success, message, token = engine.create_link_token(current_user.id)
    if success:
        return jsonify({"success": True, "message": message, **token})
    return jsonify({"success": False, "message": message}), 500


@app.route('/api/telegram/status', methods=['GET'])
@login_required
def telegram_status_api():
    link = engine.get_telegram_link(current_user.id)
    return jsonify({
        "linked": link is not None,
        "link": link,
        "pending_token": engine.get_active_link_token(current_user.id),
    })


@app.route('/api/telegram/link', methods=['POST'])
@cron_required
def redeem_link_token_api():
    """Called by the bot when a user sends it their link token."""
    data = _json_body()
    if not all([data.get('token'), data.get('chat_id')]):
        return jsonify({"success": False, "message": "token and chat_id are required."}), 400

    success, message, user_id = engine.redeem_link_token(
        token=data['token'],
        chat_id=data['chat_id'],
        username=data.get('username'),
        first_name=data.get('first_name'),
        last_name=data.get('last_name'),
    )
    if success:
        return jsonify({"success": True, "message": message, "user_id": user_id})
    status_code = 409 if "already linked" in message else 400
    return jsonify({"success": False, "message": message}), status_code


# --- HEALTH ---

@app.route('/api/health', methods=['GET'])
def health_api():
    missing = verify_schema()
    if missing:
        return jsonify({"status": "error", "missing_tables": missing}), 500
    return jsonify({"status": "ok"})


@app.errorhandler(400)
def bad_request(error):
    return jsonify({"success": False, "message": error.description}), 400


@app.errorhandler(500)
def internal_error(error):
    logger.exception(
        "[API] Unhandled error on %s", request.path,
        exc_info=getattr(error, 'original_exception', None) or error,
    )
    return jsonify({"success": False, "message": "An unexpected error occurred."}), 500


# --- RUN THE APP ---
if __name__ == '__main__':
    config.configure_logging()
    app.run(debug=True, port=5000)
