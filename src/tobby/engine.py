"""
Tobby - Expense Tracking Engine

This module contains the TobbyEngine class, a stateless data engine for the
Tobby expense tracker. Every operation opens its own SQLite connection, does
its work and closes it again; nothing is cached between calls.

The engine covers:
- Users provisioned by the external identity provider (API tokens)
- Transactions (withdrawals and deposits) with soft delete
- User-defined categories and their many-to-many link to transactions
- Monthly budget preferences
- Subscription status for premium features
- Recurring transaction rules and their generation log
- Messaging-bot (Telegram) account linking tokens

It is also the store used by the daily generation job (see generation.py):
fetch_eligible_rules(), has_generation_log() and record_generation().

Key Design Principles:
- **Stateless**: all state lives in SQLite
- **User Segregation**: every user-facing call is scoped by user_id
- **Exact Money**: amounts are stored as TEXT and handled as Decimal
"""

import json
import logging
import secrets
import sqlite3
import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from . import config
from .models import (
    FREQUENCY_TYPES,
    TRANSACTION_TYPES,
    RecurringRule,
    parse_frequency_config,
)
from .subscription import SUBSCRIPTION_STATUSES

logger = logging.getLogger(__name__)

LINK_TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O or 1/I lookalikes
LINK_TOKEN_LENGTH = 6
LINK_TOKEN_TTL = datetime.timedelta(minutes=15)
DEFAULT_CATEGORY_COLOR = '#808080'
DEFAULT_CATEGORY_ICON = 'Tag'
CENT = Decimal('0.01')


class StoreError(Exception):
    """A storage operation failed."""


class DuplicateGenerationError(StoreError):
    """A generation log entry already exists for (rule, date)."""

    def __init__(self, rule_id, day):
        super().__init__(f"Recurring rule {rule_id} was already generated for {day}")
        self.rule_id = rule_id
        self.day = day


def suggest_categories(description, categories, limit=3):
    """
    Suggest categories whose names overlap with a transaction description.

    A category matches when either string contains the other, or any word of
    one appears inside the other.

    Args:
        description (str): transaction description
        categories (list[dict]): the user's categories (need a 'name' key)
        limit (int): maximum number of suggestions

    Returns:
        list[dict]: matching categories in their original order
    """
    desc = (description or '').lower().strip()
    if not desc:
        return []

    matches = []
    for category in categories:
        name = (category.get('name') or '').lower().strip()
        if not name:
            continue
        if (desc in name or name in desc
                or any(word in name for word in desc.split())
                or any(word in desc for word in name.split())):
            matches.append(category)
    return matches[:limit]


class TobbyEngine:
    """
    Stateless data engine for Tobby.

    Methods are organized into functional groups:
    - Users: provisioning and token lookup
    - Budget: monthly budget preference
    - Categories: CRUD and transaction assignment
    - Transactions: CRUD with soft delete
    - Recurring Rules: CRUD, pause/resume, generation history
    - Generation Store: the contract used by GenerationJob
    - Telegram Linking: one-time link tokens

    User-facing operations return (success, message) tuples, with a third
    element when they create something. Storage errors inside the generation
    store methods are raised as StoreError instead, since the job decides
    how to handle them.

    Example:
        engine = TobbyEngine()
        ok, msg, rule_id = engine.add_recurring_transaction(
            user_id=1, description="Salary", amount="3500.00",
            transaction_type="deposit", frequency_type="monthly",
            frequency_config={"day": 5},
        )
    """

    def __init__(self, db_path=None):
        """db_path overrides the configured TOBBY_DB_PATH."""
        self._db_path = db_path

    # =============================================================================
    # SQLITE HELPER METHODS
    # =============================================================================

    @staticmethod
    def _to_money_str(value):
        """Convert Decimal or float to string for SQLite storage"""
        if value is None:
            return None
        return f"{Decimal(str(value)):.2f}"

    @staticmethod
    def _from_money_str(value):
        """Convert string from SQLite to Decimal for calculations"""
        if value is None or value == '':
            return Decimal('0.00')
        return Decimal(str(value))

    @staticmethod
    def _parse_amount(value):
        """
        Parse user input into a positive Decimal rounded to cents, raising
        ValueError otherwise. Amounts that round to 0.00 are rejected.
        """
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, AttributeError):
            raise ValueError("Amount must be a number.")
        if not amount.is_finite():
            raise ValueError("Amount must be a number.")
        try:
            amount = amount.quantize(CENT)
        except InvalidOperation:
            raise ValueError("Amount is too large.")
        if amount <= 0:
            raise ValueError("Amount must be at least 0.01.")
        return amount

    @staticmethod
    def _to_date_str(value):
        """Normalise a date, datetime or ISO string to 'YYYY-MM-DD'."""
        if value is None or value == '':
            return None
        if isinstance(value, datetime.datetime):
            return value.date().isoformat()
        if isinstance(value, datetime.date):
            return value.isoformat()
        try:
            return datetime.date.fromisoformat(str(value).split('T')[0].split(' ')[0]).isoformat()
        except ValueError:
            raise ValueError(f"Invalid date: {value}")

    @staticmethod
    def _to_datetime_str(dt):
        """Convert datetime object to SQLite TEXT format"""
        if dt is None:
            return None
        return dt.strftime('%Y-%m-%d %H:%M:%S')

    @staticmethod
    def _utcnow():
        return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)

    @staticmethod
    def _row_to_dict(row):
        """Convert sqlite3.Row to dictionary for JSON serialization"""
        if row is None:
            return None
        return dict(row)

    @staticmethod
    def _rows_to_dicts(rows):
        """Convert list of sqlite3.Row objects to list of dicts"""
        return [dict(row) for row in rows]

    # =============================================================================
    # DATABASE CONNECTION
    # =============================================================================

    def _get_db_connection(self):
        """
        Establish a new database connection.

        Returns:
            tuple: (connection, cursor) - SQLite connection and cursor

        Note:
            Callers are responsible for closing the connection and cursor.
        """
        db_path = Path(self._db_path) if self._db_path else config.get_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(db_path))
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.row_factory = sqlite3.Row
        return conn, conn.cursor()

    # =============================================================================
    # USERS
    # =============================================================================

    def create_user(self, email):
        """
        Provision a user and issue the API token they authenticate with.

        Identity itself is owned by the external auth provider; this only
        records the account so data can be scoped to it.

        Returns:
            tuple: (success, message, user dict or None)
        """
        email = (email or '').strip().lower()
        if not email or '@' not in email:
            return False, "A valid email address is required.", None

        token = secrets.token_urlsafe(32)
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "INSERT INTO users (email, api_token) VALUES (?, ?)",
                (email, token)
            )
            conn.commit()
            user = {'user_id': cursor.lastrowid, 'email': email, 'api_token': token}
            logger.info("[USERS] Created user %s (%s)", user['user_id'], email)
            return True, f"User '{email}' created.", user
        except sqlite3.IntegrityError:
            conn.rollback()
            return False, f"User '{email}' already exists.", None
        finally:
            cursor.close()
            conn.close()

    def get_user_by_token(self, token):
        if not token:
            return None
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT user_id, email, created_at FROM users WHERE api_token = ?",
                (token,)
            )
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()

    def get_user(self, user_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT user_id, email, created_at FROM users WHERE user_id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # BUDGET PREFERENCES
    # =============================================================================

    def get_monthly_budget(self, user_id):
        """Return the user's monthly budget, Decimal('0.00') when none is set."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT monthly_budget FROM user_preferences WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return self._from_money_str(row['monthly_budget'] if row else None)
        finally:
            cursor.close()
            conn.close()

    def set_monthly_budget(self, user_id, budget):
        try:
            budget = Decimal(str(budget))
        except InvalidOperation:
            return False, "Budget must be a number."
        if not budget.is_finite() or budget < 0:
            return False, "Budget cannot be negative."

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                INSERT INTO user_preferences (user_id, monthly_budget)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    monthly_budget = excluded.monthly_budget,
                    updated_at = CURRENT_TIMESTAMP
            """, (user_id, self._to_money_str(budget)))
            conn.commit()
            return True, "Monthly budget updated."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # SUBSCRIPTIONS
    # =============================================================================

    def get_user_subscription(self, user_id):
        """Return the user's subscription row as a dict, or None when they have none."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("SELECT * FROM user_subscriptions WHERE user_id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()

    def set_user_subscription(self, user_id, subscription_status, plan_name,
                              stripe_customer_id=None, stripe_subscription_id=None,
                              current_period_start=None, current_period_end=None):
        """
        Create or replace the user's subscription row.

        Called with the state reported by the billing provider.

        Returns:
            tuple: (success, message)
        """
        if subscription_status not in SUBSCRIPTION_STATUSES:
            return False, f"Invalid subscription status. Must be one of: {', '.join(SUBSCRIPTION_STATUSES)}"
        plan_name = (plan_name or '').strip()
        if not plan_name:
            return False, "Plan name is required."

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                INSERT INTO user_subscriptions
                    (user_id, subscription_status, plan_name, stripe_customer_id,
                     stripe_subscription_id, current_period_start, current_period_end)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    subscription_status = excluded.subscription_status,
                    plan_name = excluded.plan_name,
                    stripe_customer_id = excluded.stripe_customer_id,
                    stripe_subscription_id = excluded.stripe_subscription_id,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    updated_at = CURRENT_TIMESTAMP
            """, (user_id, subscription_status, plan_name, stripe_customer_id,
                  stripe_subscription_id, current_period_start, current_period_end))
            conn.commit()
            logger.info("[SUBSCRIPTION] User %s is now %s on plan '%s'", user_id, subscription_status, plan_name)
            return True, "Subscription updated."
        except sqlite3.IntegrityError:
            conn.rollback()
            return False, "User not found."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # CATEGORIES
    # =============================================================================

    def get_categories(self, user_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT id, user_id, name, color, icon, created_at FROM categories WHERE user_id = ? ORDER BY name",
                (user_id,)
            )
            return self._rows_to_dicts(cursor.fetchall())
        finally:
            cursor.close()
            conn.close()

    def add_category(self, user_id, name, color=None, icon=None):
        """
        Create a category for a user.

        Names are trimmed and must be unique per user.

        Returns:
            tuple: (success, message, category_id or None)
        """
        name = (name or '').strip()
        if not name:
            return False, "Category name is required.", None

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "INSERT INTO categories (user_id, name, color, icon) VALUES (?, ?, ?, ?)",
                (user_id, name, color or DEFAULT_CATEGORY_COLOR, icon or DEFAULT_CATEGORY_ICON)
            )
            conn.commit()
            return True, f"Category '{name}' created.", cursor.lastrowid
        except sqlite3.IntegrityError:
            conn.rollback()
            return False, f"A category named '{name}' already exists.", None
        finally:
            cursor.close()
            conn.close()

    def update_category(self, user_id, category_id, name=None, color=None, icon=None):
        updates = {}
        if name is not None:
            name = name.strip()
            if not name:
                return False, "Category name is required."
            updates['name'] = name
        if color is not None:
            updates['color'] = color
        if icon is not None:
            updates['icon'] = icon
        if not updates:
            return False, "Nothing to update."

        assignments = ", ".join(f"{column} = ?" for column in updates)
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                f"UPDATE categories SET {assignments} WHERE id = ? AND user_id = ?",
                (*updates.values(), category_id, user_id)
            )
            if cursor.rowcount == 0:
                return False, "Category not found or you do not have permission to edit it."
            conn.commit()
            return True, "Category updated."
        except sqlite3.IntegrityError:
            conn.rollback()
            return False, f"A category named '{updates.get('name')}' already exists."
        finally:
            cursor.close()
            conn.close()

    def delete_category(self, user_id, category_id):
        """Delete a category; its transaction assignments cascade away."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("DELETE FROM categories WHERE id = ? AND user_id = ?", (category_id, user_id))
            if cursor.rowcount == 0:
                return False, "Category not found or you do not have permission to delete it."
            conn.commit()
            return True, "Category deleted."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def _check_categories_owned(self, cursor, user_id, category_ids):
        if not category_ids:
            return True
        placeholders = ", ".join("?" for _ in category_ids)
        cursor.execute(
            f"SELECT COUNT(*) AS n FROM categories WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *category_ids)
        )
        return cursor.fetchone()['n'] == len(set(category_ids))

    def set_transaction_categories(self, user_id, transaction_id, category_ids):
        """Replace every category assignment of a transaction with category_ids."""
        category_ids = list(dict.fromkeys(category_ids or []))
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT 1 FROM user_transactions WHERE id = ? AND user_id = ? AND deleted_at IS NULL",
                (transaction_id, user_id)
            )
            if not cursor.fetchone():
                return False, "Transaction not found."
            if not self._check_categories_owned(cursor, user_id, category_ids):
                return False, "Invalid category specified."

            cursor.execute("DELETE FROM transaction_categories WHERE transaction_id = ?", (transaction_id,))
            cursor.executemany(
                "INSERT INTO transaction_categories (transaction_id, category_id) VALUES (?, ?)",
                [(transaction_id, category_id) for category_id in category_ids]
            )
            conn.commit()
            return True, "Categories updated."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def get_most_used_categories(self, user_id, limit=5):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                SELECT c.id, c.user_id, c.name, c.color, c.icon, c.created_at,
                       COUNT(tc.transaction_id) AS usage_count
                FROM categories c
                JOIN transaction_categories tc ON tc.category_id = c.id
                WHERE c.user_id = ?
                GROUP BY c.id
                ORDER BY usage_count DESC, c.name
                LIMIT ?
            """, (user_id, limit))
            return self._rows_to_dicts(cursor.fetchall())
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # TRANSACTIONS
    # =============================================================================

    def _transaction_from_row(self, row):
        tx = self._row_to_dict(row)
        tx['amount'] = self._from_money_str(tx['amount'])
        tx['categories'] = []
        return tx

    def get_transactions(self, user_id, include_deleted=False):
        """
        Retrieve a user's transactions, newest first, with categories attached.

        Args:
            user_id (int): owner of the transactions
            include_deleted (bool): also return soft-deleted rows

        Returns:
            list[dict]: amount is a Decimal; 'categories' is a list of dicts
        """
        conn, cursor = self._get_db_connection()
        try:
            query = """
                SELECT id, user_id, chat_id, description, transaction_date,
                       transaction_type, amount, created_at, deleted_at
                FROM user_transactions
                WHERE user_id = ?
            """
            if not include_deleted:
                query += " AND deleted_at IS NULL"
            query += " ORDER BY transaction_date DESC, id DESC"
            cursor.execute(query, (user_id,))
            transactions = [self._transaction_from_row(row) for row in cursor.fetchall()]

            cursor.execute("""
                SELECT tc.transaction_id, c.id, c.name, c.color, c.icon
                FROM transaction_categories tc
                JOIN categories c ON c.id = tc.category_id
                WHERE c.user_id = ?
                ORDER BY c.name
            """, (user_id,))
            by_transaction = {}
            for row in cursor.fetchall():
                category = self._row_to_dict(row)
                by_transaction.setdefault(category.pop('transaction_id'), []).append(category)

            for tx in transactions:
                tx['categories'] = by_transaction.get(tx['id'], [])
            return transactions
        finally:
            cursor.close()
            conn.close()

    def get_transaction(self, user_id, transaction_id):
        for tx in self.get_transactions(user_id):
            if tx['id'] == transaction_id:
                return tx
        return None

    def add_transaction(self, user_id, description, amount, transaction_type,
                        transaction_date=None, category_ids=None, chat_id=None):
        """
        Record a withdrawal or deposit.

        Returns:
            tuple: (success, message, transaction_id or None)
        """
        try:
            amount = self._parse_amount(amount)
            if transaction_type not in TRANSACTION_TYPES:
                raise ValueError(f"Transaction type must be one of: {', '.join(TRANSACTION_TYPES)}")
            tx_date = self._to_date_str(transaction_date) or config.today().isoformat()
        except ValueError as e:
            return False, str(e), None

        category_ids = list(dict.fromkeys(category_ids or []))
        conn, cursor = self._get_db_connection()
        try:
            if not self._check_categories_owned(cursor, user_id, category_ids):
                return False, "Invalid category specified.", None

            cursor.execute("""
                INSERT INTO user_transactions
                    (user_id, chat_id, description, transaction_date, transaction_type, amount)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, chat_id, (description or '').strip() or None, tx_date,
                  transaction_type, self._to_money_str(amount)))
            transaction_id = cursor.lastrowid
            cursor.executemany(
                "INSERT INTO transaction_categories (transaction_id, category_id) VALUES (?, ?)",
                [(transaction_id, category_id) for category_id in category_ids]
            )
            conn.commit()
            return True, "Transaction added.", transaction_id
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}", None
        finally:
            cursor.close()
            conn.close()

    def update_transaction(self, user_id, transaction_id, description, amount, transaction_type, transaction_date):
        try:
            amount = self._parse_amount(amount)
            if transaction_type not in TRANSACTION_TYPES:
                raise ValueError(f"Transaction type must be one of: {', '.join(TRANSACTION_TYPES)}")
            tx_date = self._to_date_str(transaction_date)
            if not tx_date:
                raise ValueError("Transaction date is required.")
        except ValueError as e:
            return False, str(e)

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                UPDATE user_transactions
                SET description = ?, amount = ?, transaction_type = ?, transaction_date = ?
                WHERE id = ? AND user_id = ? AND deleted_at IS NULL
            """, ((description or '').strip() or None, self._to_money_str(amount),
                  transaction_type, tx_date, transaction_id, user_id))
            if cursor.rowcount == 0:
                return False, "Transaction not found or you do not have permission to edit it."
            conn.commit()
            return True, "Transaction updated."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def delete_transaction(self, user_id, transaction_id):
        """Soft-delete a transaction by stamping deleted_at."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                UPDATE user_transactions SET deleted_at = ?
                WHERE id = ? AND user_id = ? AND deleted_at IS NULL
            """, (self._to_datetime_str(self._utcnow()), transaction_id, user_id))
            if cursor.rowcount == 0:
                return False, "Transaction not found or you do not have permission to delete it."
            conn.commit()
            return True, "Transaction deleted."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # RECURRING RULES
    # =============================================================================

    def _validate_recurring(self, description, amount, transaction_type,
                            frequency_type, frequency_config, start_date, end_date, default_start=None):
        """
        Return the normalised column values for a rule, raising ValueError.

        A missing start_date falls back to default_start, then to today.
        """
        description = (description or '').strip()
        if not description:
            raise ValueError("Description is required.")
        amount = self._parse_amount(amount)
        if transaction_type not in TRANSACTION_TYPES:
            raise ValueError(f"Transaction type must be one of: {', '.join(TRANSACTION_TYPES)}")
        if frequency_type not in FREQUENCY_TYPES:
            raise ValueError(f"Invalid frequency. Must be one of: {', '.join(FREQUENCY_TYPES)}")

        parsed = parse_frequency_config(frequency_type, frequency_config)
        start = (self._to_date_str(start_date) or self._to_date_str(default_start)
                 or config.today().isoformat())
        end = self._to_date_str(end_date)
        if end and end < start:
            raise ValueError("End date cannot be before the start date.")

        return description, amount, json.dumps(parsed.to_dict()), start, end

    @staticmethod
    def _rules_from_rows(rows):
        """Build RecurringRule objects, skipping rows whose columns can't be read."""
        rules = []
        for row in rows:
            try:
                rules.append(RecurringRule.from_row(row))
            except (ValueError, InvalidOperation, TypeError) as e:
                logger.warning("[RULES] Skipping recurring transaction %s: unreadable row (%s)", row["id"], e)
        return rules

    def get_recurring_transactions(self, user_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT * FROM recurring_transactions WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,)
            )
            return self._rules_from_rows(cursor.fetchall())
        finally:
            cursor.close()
            conn.close()

    def get_recurring_transaction(self, user_id, rule_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT * FROM recurring_transactions WHERE id = ? AND user_id = ?",
                (rule_id, user_id)
            )
            row = cursor.fetchone()
            rules = self._rules_from_rows([row]) if row else []
            return rules[0] if rules else None
        finally:
            cursor.close()
            conn.close()

    def add_recurring_transaction(self, user_id, description, amount, transaction_type,
                                  frequency_type, frequency_config, start_date=None, end_date=None):
        """
        Add a recurring transaction rule.

        Args:
            user_id (int): owner of the rule
            description (str): copied onto every generated transaction
            amount (str/Decimal): positive amount
            transaction_type (str): 'withdrawal' or 'deposit'
            frequency_type (str): 'monthly', 'biweekly', 'weekly' or 'yearly'
            frequency_config (dict): shape depends on frequency_type
                (see models.py)
            start_date (str/date, optional): first eligible date, default today
            end_date (str/date, optional): last eligible date, None = no end

        Returns:
            tuple: (success, message, rule_id or None)

        Example:
            ok, msg, rule_id = engine.add_recurring_transaction(
                user_id=1, description="Rent", amount="1200.00",
                transaction_type="withdrawal", frequency_type="monthly",
                frequency_config={"day": 10}, start_date="2024-01-01",
            )
        """
        try:
            description, amount, config_json, start, end = self._validate_recurring(
                description, amount, transaction_type, frequency_type,
                frequency_config, start_date, end_date
            )
        except ValueError as e:
            return False, str(e), None

        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                INSERT INTO recurring_transactions
                    (user_id, description, amount, transaction_type, frequency_type,
                     frequency_config, start_date, end_date, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
            """, (user_id, description, self._to_money_str(amount), transaction_type,
                  frequency_type, config_json, start, end))
            conn.commit()
            return True, f"Recurring transaction '{description}' added.", cursor.lastrowid
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}", None
        finally:
            cursor.close()
            conn.close()

    def update_recurring_transaction(self, user_id, rule_id, description, amount, transaction_type,
                                     frequency_type, frequency_config, start_date=None, end_date=None):
        """Replace a rule's fields. A missing start_date keeps the stored one."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT start_date FROM recurring_transactions WHERE id = ? AND user_id = ?",
                (rule_id, user_id)
            )
            row = cursor.fetchone()
            if row is None:
                return False, "Recurring transaction not found or you do not have permission to edit it."

            try:
                description, amount, config_json, start, end = self._validate_recurring(
                    description, amount, transaction_type, frequency_type,
                    frequency_config, start_date, end_date, default_start=row['start_date']
                )
            except ValueError as e:
                return False, str(e)

            cursor.execute("""
                UPDATE recurring_transactions
                SET description = ?, amount = ?, transaction_type = ?, frequency_type = ?,
                    frequency_config = ?, start_date = ?, end_date = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND user_id = ?
            """, (description, self._to_money_str(amount), transaction_type, frequency_type,
                  config_json, start, end, rule_id, user_id))
            if cursor.rowcount == 0:
                return False, "Recurring transaction not found or you do not have permission to edit it."
            conn.commit()
            return True, "Recurring transaction updated."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def set_recurring_active(self, user_id, rule_id, is_active):
        """Pause (is_active=False) or resume a rule without deleting it."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                UPDATE recurring_transactions
                SET is_active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND user_id = ?
            """, (1 if is_active else 0, rule_id, user_id))
            if cursor.rowcount == 0:
                return False, "Recurring transaction not found."
            conn.commit()
            return True, "Recurring transaction resumed." if is_active else "Recurring transaction paused."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def delete_recurring_transaction(self, user_id, rule_id):
        """Delete a rule. Its generation log goes with it; generated transactions stay."""
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("DELETE FROM recurring_transactions WHERE id = ? AND user_id = ?", (rule_id, user_id))
            if cursor.rowcount == 0:
                return False, "Recurring transaction not found or you do not have permission to delete it."
            conn.commit()
            return True, "Recurring transaction deleted successfully."
        except sqlite3.Error as e:
            conn.rollback()
            return False, f"An error occurred: {e}"
        finally:
            cursor.close()
            conn.close()

    def get_generation_logs(self, user_id, rule_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                SELECT l.id, l.recurring_transaction_id, l.generated_transaction_id,
                       l.generated_for_date, l.generated_at
                FROM transaction_generation_log l
                JOIN recurring_transactions r ON r.id = l.recurring_transaction_id
                WHERE l.recurring_transaction_id = ? AND r.user_id = ?
                ORDER BY l.generated_for_date DESC
            """, (rule_id, user_id))
            return self._rows_to_dicts(cursor.fetchall())
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # GENERATION STORE (used by generation.GenerationJob)
    # =============================================================================

    def fetch_eligible_rules(self, day):
        """
        Load every active rule whose [start_date, end_date] window contains day.

        Raises:
            StoreError: the rules could not be read
        """
        day_str = self._to_date_str(day)
        try:
            conn, cursor = self._get_db_connection()
        except sqlite3.Error as e:
            raise StoreError(f"Could not open database: {e}") from e
        try:
            cursor.execute("""
                SELECT * FROM recurring_transactions
                WHERE is_active = 1
                  AND start_date <= ?
                  AND (end_date IS NULL OR end_date >= ?)
                ORDER BY id
            """, (day_str, day_str))
            return self._rules_from_rows(cursor.fetchall())
        except sqlite3.Error as e:
            raise StoreError(f"Could not fetch recurring transactions: {e}") from e
        finally:
            cursor.close()
            conn.close()

    def has_generation_log(self, rule_id, day):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                SELECT 1 FROM transaction_generation_log
                WHERE recurring_transaction_id = ? AND generated_for_date = ?
            """, (rule_id, self._to_date_str(day)))
            return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise StoreError(f"Could not read generation log: {e}") from e
        finally:
            cursor.close()
            conn.close()

    def record_generation(self, rule, day):
        """
        Materialise rule for day.

        Inserts the transaction, writes the generation log entry and moves
        last_generated_date forward, all in one database transaction. If any
        of the three writes fails none of them is kept, so the next run
        retries the rule.

        Returns:
            int: id of the new transaction

        Raises:
            DuplicateGenerationError: a log entry for (rule, day) already exists
            StoreError: any other write failure
        """
        day_str = self._to_date_str(day)
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                INSERT INTO user_transactions
                    (user_id, description, transaction_date, transaction_type, amount)
                VALUES (?, ?, ?, ?, ?)
            """, (rule.user_id, rule.description, day_str, rule.transaction_type,
                  self._to_money_str(rule.amount)))
            transaction_id = cursor.lastrowid

            cursor.execute("""
                INSERT INTO transaction_generation_log
                    (recurring_transaction_id, generated_transaction_id, generated_for_date)
                VALUES (?, ?, ?)
            """, (rule.id, transaction_id, day_str))

            cursor.execute("""
                UPDATE recurring_transactions
                SET last_generated_date = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (day_str, rule.id))

            conn.commit()
            return transaction_id
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if 'transaction_generation_log' in str(e):
                raise DuplicateGenerationError(rule.id, day_str) from e
            raise StoreError(f"Could not record generation for rule {rule.id}: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Could not record generation for rule {rule.id}: {e}") from e
        finally:
            cursor.close()
            conn.close()

    # =============================================================================
    # TELEGRAM LINKING
    # =============================================================================

    def create_link_token(self, user_id, now=None):
        """
        Issue a short one-time token the user sends to the bot to link their chat.

        Tokens are 6 characters from LINK_TOKEN_ALPHABET and expire after
        15 minutes.

        Returns:
            tuple: (success, message, token dict or None)
        """
        now = now or self._utcnow()
        expires_at = now + LINK_TOKEN_TTL
        conn, cursor = self._get_db_connection()
        try:
            for _ in range(5):
                token = ''.join(secrets.choice(LINK_TOKEN_ALPHABET) for _ in range(LINK_TOKEN_LENGTH))
                try:
                    cursor.execute("""
                        INSERT INTO user_link_tokens (user_id, token, created_at, expires_at)
                        VALUES (?, ?, ?, ?)
                    """, (user_id, token, self._to_datetime_str(now), self._to_datetime_str(expires_at)))
                except sqlite3.IntegrityError:
                    continue
                conn.commit()
                return True, "Link token created.", {
                    'token': token,
                    'created_at': self._to_datetime_str(now),
                    'expires_at': self._to_datetime_str(expires_at),
                }
            return False, "Failed to generate token.", None
        finally:
            cursor.close()
            conn.close()

    def get_active_link_token(self, user_id, now=None):
        """Most recent token that is neither used nor expired."""
        now = now or self._utcnow()
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                SELECT id, user_id, token, created_at, expires_at, used_at
                FROM user_link_tokens
                WHERE user_id = ? AND used_at IS NULL AND expires_at > ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """, (user_id, self._to_datetime_str(now)))
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()

    def redeem_link_token(self, token, chat_id, username=None, first_name=None, last_name=None, now=None):
        """
        Link a bot chat to the user who issued token.

        Returns:
            tuple: (success, message, user_id or None)
        """
        now = now or self._utcnow()
        token = (token or '').strip().upper()
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute(
                "SELECT id, user_id, expires_at, used_at FROM user_link_tokens WHERE token = ?",
                (token,)
            )
            row = self._row_to_dict(cursor.fetchone())
            if not row:
                return False, "Invalid token.", None
            if row['used_at']:
                return False, "This token has already been used.", None
            if row['expires_at'] <= self._to_datetime_str(now):
                return False, "This token has expired.", None

            cursor.execute("""
                INSERT INTO telegram_users (user_id, chat_id, username, first_name, last_name, linked_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    chat_id = excluded.chat_id,
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    linked_at = excluded.linked_at
            """, (row['user_id'], str(chat_id), username, first_name, last_name, self._to_datetime_str(now)))
            cursor.execute(
                "UPDATE user_link_tokens SET used_at = ? WHERE id = ?",
                (self._to_datetime_str(now), row['id'])
            )
            conn.commit()
            logger.info("[TELEGRAM] Linked chat %s to user %s", chat_id, row['user_id'])
            return True, "Telegram account linked.", row['user_id']
        except sqlite3.IntegrityError:
            conn.rollback()
            return False, "This chat is already linked to another account.", None
        finally:
            cursor.close()
            conn.close()

    def get_telegram_link(self, user_id):
        conn, cursor = self._get_db_connection()
        try:
            cursor.execute("""
                SELECT id, user_id, chat_id, username, first_name, last_name, linked_at
                FROM telegram_users WHERE user_id = ?
            """, (user_id,))
            return self._row_to_dict(cursor.fetchone())
        finally:
            cursor.close()
            conn.close()
