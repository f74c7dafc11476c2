"""
Tobby CLI - Command-line interface.

Usage:
    tobby init-db [--reset]          # Create the SQLite schema
    tobby migrate [--list]           # Apply (or list) schema migrations
    tobby create-user EMAIL          # Provision a user and print their API token
    tobby generate [--date DATE]     # Run the recurring transaction job once
    tobby serve [--host H] [--port P]
"""

import argparse
import datetime
import json
import sys

from . import __version__, config
from .engine import TobbyEngine
from .generation import GenerationJob, RuleFetchError, JobTimeoutError
from .migration_runner import list_migrations, run_all_pending
from .setup_sqlite import create_database, reset_database, verify_schema


def cmd_init_db(args):
    db_path = config.get_db_path()
    if args.reset:
        ok = reset_database(db_path)
    else:
        ok = create_database(db_path)
    if not ok:
        print("[ERROR] Failed to create database.", file=sys.stderr)
        return 1

    missing = verify_schema(db_path)
    if missing:
        print(f"[ERROR] Missing tables: {', '.join(missing)}", file=sys.stderr)
        return 1
    print(f"[OK] Database ready at {db_path}")
    return 0


def cmd_migrate(args):
    if args.list:
        current, migrations = list_migrations()
        print(f"Current schema version: {current}")
        for version, description, applied in migrations:
            status = "applied" if applied else "pending"
            print(f"  {version:03d}  {description:<40} {status}")
        return 0

    applied = run_all_pending()
    if applied < 0:
        print("[ERROR] Migration failed.", file=sys.stderr)
        return 1
    if applied == 0:
        print("[OK] No pending migrations.")
    else:
        print(f"[OK] Applied {applied} migration(s) successfully!")
    return 0


def cmd_create_user(args):
    success, message, user = TobbyEngine().create_user(args.email)
    if not success:
        print(f"[ERROR] {message}", file=sys.stderr)
        return 1
    print(message)
    print(f"API token: {user['api_token']}")
    return 0


def cmd_generate(args):
    day = None
    if args.date:
        try:
            day = datetime.date.fromisoformat(args.date)
        except ValueError:
            print(f"[ERROR] Invalid date '{args.date}'. Use YYYY-MM-DD.", file=sys.stderr)
            return 2

    try:
        summary = GenerationJob(TobbyEngine()).run(day)
    except RuleFetchError as e:
        print(json.dumps({"success": False, "error": str(e)}))
        return 1
    except JobTimeoutError as e:
        body = e.summary.to_dict()
        body['error'] = str(e)
        print(json.dumps(body))
        return 1

    print(json.dumps(summary.to_dict()))
    return 0


def cmd_serve(args):
    # Importing the app creates and migrates the database
    from .api import app
    app.run(host=args.host, port=args.port)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog='tobby',
        description='Tobby expense tracker backend',
    )
    parser.add_argument('--version', action='version', version=f'tobby {__version__}')
    parser.add_argument('--log-level', default=None, help='Log level (default: LOG_LEVEL or INFO)')
    subparsers = parser.add_subparsers(dest='command', title='commands', metavar='<command>')

    init_parser = subparsers.add_parser('init-db', help='Create the database schema')
    init_parser.add_argument('--reset', action='store_true', help='Delete the existing database first')

    migrate_parser = subparsers.add_parser('migrate', help='Apply pending schema migrations')
    migrate_parser.add_argument('--list', action='store_true', help='Show every migration and its status')

    user_parser = subparsers.add_parser('create-user', help='Provision a user and issue an API token')
    user_parser.add_argument('email')

    generate_parser = subparsers.add_parser('generate', help='Generate due recurring transactions')
    generate_parser.add_argument('--date', help='Generate for this date (YYYY-MM-DD) instead of today')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', default='127.0.0.1')
    serve_parser.add_argument('--port', type=int, default=5000)

    return parser


COMMANDS = {
    'init-db': cmd_init_db,
    'migrate': cmd_migrate,
    'create-user': cmd_create_user,
    'generate': cmd_generate,
    'serve': cmd_serve,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    config.configure_logging(args.log_level)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
