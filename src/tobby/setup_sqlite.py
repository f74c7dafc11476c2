"""
Tobby - SQLite Database Setup & Initialization

This module creates and initializes the Tobby SQLite database schema.
It creates all tables with proper foreign key relationships and indexes.

Database Schema Overview:
------------------------
- users: identities provisioned by the external auth provider (API tokens)
- user_preferences: monthly budget per user
- categories: user-defined transaction categories
- user_transactions: withdrawals and deposits (soft-deleted via deleted_at)
- transaction_categories: many-to-many link between transactions and categories
- recurring_transactions: recurring rules with a JSON frequency_config
- transaction_generation_log: one row per (rule, date) the daily job materialised
- telegram_users / user_link_tokens: messaging-bot account linking
- user_subscriptions: billing status and plan per user (premium features)
- schema_version: Track applied database migrations

Key Design Features:
- Foreign key constraints for referential integrity
- TEXT storage for monetary values (preserves exact precision)
- UNIQUE(recurring_transaction_id, generated_for_date) backs the generation
  job's duplicate check when two runs race
"""

import logging
import sqlite3
from pathlib import Path

from . import config

logger = logging.getLogger(__name__)

EXPECTED_TABLES = [
    'users',
    'user_preferences',
    'categories',
    'user_transactions',
    'transaction_categories',
    'recurring_transactions',
    'transaction_generation_log',
    'telegram_users',
    'user_link_tokens',
    'user_subscriptions',
    'schema_version',
]

SCHEMA = [
    ('users', """
        CREATE TABLE IF NOT EXISTS users (
            user_id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            api_token TEXT NOT NULL UNIQUE,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """, []),
    ('user_preferences', """
        CREATE TABLE IF NOT EXISTS user_preferences (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            monthly_budget TEXT NOT NULL DEFAULT '0.00',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, []),
    ('categories', """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            color TEXT DEFAULT '#808080',
            icon TEXT DEFAULT 'Tag',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE,
            UNIQUE(user_id, name)
        )
    """, ["CREATE INDEX IF NOT EXISTS idx_categories_user_id ON categories(user_id);"]),
    ('user_transactions', """
        CREATE TABLE IF NOT EXISTS user_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            chat_id TEXT DEFAULT NULL,
            description TEXT DEFAULT NULL,
            transaction_date TEXT NOT NULL,
            transaction_type TEXT CHECK(transaction_type IN ('withdrawal', 'deposit')) NOT NULL,
            amount TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            deleted_at TEXT DEFAULT NULL,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, ["CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON user_transactions(user_id, transaction_date DESC);"]),
    ('transaction_categories', """
        CREATE TABLE IF NOT EXISTS transaction_categories (
            transaction_id INTEGER NOT NULL,
            category_id INTEGER NOT NULL,
            PRIMARY KEY (transaction_id, category_id),
            FOREIGN KEY (transaction_id) REFERENCES user_transactions(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
        )
    """, ["CREATE INDEX IF NOT EXISTS idx_transaction_categories_category ON transaction_categories(category_id);"]),
    ('recurring_transactions', """
        CREATE TABLE IF NOT EXISTS recurring_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            description TEXT NOT NULL,
            amount TEXT NOT NULL,
            transaction_type TEXT CHECK(transaction_type IN ('withdrawal', 'deposit')) NOT NULL,
            frequency_type TEXT NOT NULL,
            frequency_config TEXT NOT NULL DEFAULT '{}',
            start_date TEXT NOT NULL,
            end_date TEXT DEFAULT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_generated_date TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_recurring_user_id ON recurring_transactions(user_id);",
        "CREATE INDEX IF NOT EXISTS idx_recurring_active_window ON recurring_transactions(is_active, start_date, end_date);",
    ]),
    ('transaction_generation_log', """
        CREATE TABLE IF NOT EXISTS transaction_generation_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recurring_transaction_id INTEGER NOT NULL,
            generated_transaction_id INTEGER NOT NULL,
            generated_for_date TEXT NOT NULL,
            generated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (recurring_transaction_id) REFERENCES recurring_transactions(id) ON DELETE CASCADE,
            FOREIGN KEY (generated_transaction_id) REFERENCES user_transactions(id) ON DELETE CASCADE,
            UNIQUE(recurring_transaction_id, generated_for_date)
        )
    """, []),
    ('telegram_users', """
        CREATE TABLE IF NOT EXISTS telegram_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            chat_id TEXT NOT NULL UNIQUE,
            username TEXT DEFAULT NULL,
            first_name TEXT DEFAULT NULL,
            last_name TEXT DEFAULT NULL,
            linked_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, []),
    ('user_link_tokens', """
        CREATE TABLE IF NOT EXISTS user_link_tokens (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            token TEXT NOT NULL UNIQUE,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            expires_at TEXT NOT NULL,
            used_at TEXT DEFAULT NULL,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, ["CREATE INDEX IF NOT EXISTS idx_link_tokens_user_id ON user_link_tokens(user_id);"]),
    ('user_subscriptions', """
        CREATE TABLE IF NOT EXISTS user_subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            subscription_status TEXT NOT NULL DEFAULT 'free'
                CHECK(subscription_status IN ('free', 'active', 'canceled', 'past_due')),
            stripe_customer_id TEXT DEFAULT NULL,
            stripe_subscription_id TEXT DEFAULT NULL,
            plan_name TEXT NOT NULL DEFAULT 'free',
            current_period_start TEXT DEFAULT NULL,
            current_period_end TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
        )
    """, []),
    ('schema_version', """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """, []),
]


def get_db_path():
    """Return the path to the SQLite database file"""
    return config.get_db_path()


def create_database(db_path=None):
    """
    Create a fresh Tobby SQLite database with all tables.

    [WARNING]  If the database already exists, this will NOT drop it.
    Use reset_database() if you want to start fresh.

    Returns:
        bool: True if the schema is in place
    """
    db_path = Path(db_path) if db_path else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()
    cursor.execute("PRAGMA foreign_keys = ON;")

    logger.info("[DB] Creating Tobby database at %s", db_path)

    try:
        for table, ddl, indexes in SCHEMA:
            cursor.execute(ddl)
            for index in indexes:
                cursor.execute(index)
            logger.debug("[DB] Table '%s' OK", table)

        conn.commit()
        logger.info("[DB] Database schema created successfully")
        return True

    except sqlite3.Error as err:
        logger.error("[DB] Error creating database: %s", err)
        conn.rollback()
        return False

    finally:
        conn.close()


def reset_database(db_path=None):
    """
    [WARNING]  DANGER: Delete the existing database and create a fresh one.
    All data will be permanently lost!
    """
    db_path = Path(db_path) if db_path else get_db_path()

    if db_path.exists():
        logger.warning("[DB] Deleting existing database at %s", db_path)
        db_path.unlink()

    return create_database(db_path)


def verify_schema(db_path=None):
    """
    Verify that all tables exist.

    Returns:
        list: names of missing tables (empty when the schema is complete)
    """
    db_path = Path(db_path) if db_path else get_db_path()

    if not db_path.exists():
        return list(EXPECTED_TABLES)

    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()
        missing = []
        for table in EXPECTED_TABLES:
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
            if not cursor.fetchone():
                missing.append(table)
        return missing
    finally:
        conn.close()
