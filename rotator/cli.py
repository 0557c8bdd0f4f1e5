"""
Command-line interface for rotator.

Exit status reports whether the command itself ran; the state of a backup
run is reported through its job log and notification.
"""

import argparse
import getpass
import logging
import sys
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError

from rotator import configure_logging
from rotator.config import load_settings, config as config_classes
from rotator.utils.crypto import SecretManager

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def run_command(settings, args) -> int:
    """Run one rotation backup."""
    from rotator.backup.executor import execute_backup_run

    now = None
    if args.date:
        now = datetime.combine(args.date, datetime.now().time())

    result = execute_backup_run(settings, now=now)

    print(f"{result.set_name}: {result.state.value}")
    print(f"  Compression:     {result.compression.value}")
    print(f"  Synchronization: {result.synchronization.value}")
    if result.removed_sets:
        print(f"  Removed:         {', '.join(result.removed_sets)}")
    if result.log_path:
        print(f"  Log:             {result.log_path}")
    return 0


def schedule_command(settings, args) -> int:
    """Run the scheduler in the foreground."""
    from rotator.scheduler import init_scheduler, start_scheduler

    init_scheduler(settings)
    start_scheduler()
    return 0


def history_command(settings, args) -> int:
    """Print recent runs."""
    from rotator.models import create_history_store

    records = create_history_store(settings).recent(args.limit)

    if not records:
        print("No runs recorded.")
        return 0

    for record in records:
        started = record.started_at.strftime('%Y-%m-%d %H:%M:%S') if record.started_at else '-'
        print(
            f"{started}  {record.state:<10}  {record.set_name or '-'}  "
            f"compression={record.compression} sync={record.synchronization}"
        )
    return 0


def encrypt_secret_command(settings, args) -> int:
    """Encrypt a secret for the configuration file."""
    secret_key = settings.get('SECRET_KEY')
    if not secret_key:
        print("SECRET_KEY is not configured (set ROTATOR_SECRET_KEY or SECRET_KEY in the config file)", file=sys.stderr)
        return 2

    value = args.value if args.value is not None else getpass.getpass('Secret: ')
    print(SecretManager(secret_key).encrypt(value))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rotator',
        description="Tiered backup rotation and job orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run one backup now
  rotator --config /etc/rotator.json run

  # Run as if today were the first of the month
  rotator run --date 2024-03-01

  # Run on the configured cron schedule
  rotator schedule

  # Show the last 10 runs
  rotator history --limit 10
        """
    )

    parser.add_argument(
        '--config',
        help='Path to JSON configuration file (default: $ROTATOR_CONFIG)'
    )
    parser.add_argument(
        '--env',
        choices=sorted(config_classes.keys()),
        help='Configuration profile (default: $ROTATOR_ENV or production)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run one rotation backup')
    run_parser.add_argument(
        '--date',
        type=_parse_date,
        help='Resolve the tier for this date instead of today (YYYY-MM-DD)'
    )
    run_parser.set_defaults(func=run_command)

    schedule_parser = subparsers.add_parser('schedule', help='Run backups on SCHEDULE_CRON')
    schedule_parser.set_defaults(func=schedule_command)

    history_parser = subparsers.add_parser('history', help='Show recent runs')
    history_parser.add_argument(
        '--limit',
        type=int,
        default=20,
        help='Number of runs to show (default: 20)'
    )
    history_parser.set_defaults(func=history_command)

    encrypt_parser = subparsers.add_parser('encrypt-secret', help='Encrypt a password for the config file')
    encrypt_parser.add_argument(
        'value',
        nargs='?',
        help='Secret to encrypt (prompted when omitted)'
    )
    encrypt_parser.set_defaults(func=encrypt_secret_command)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = load_settings(args.config, args.env)
    except (OSError, ValueError) as e:
        print(f"Cannot load configuration: {e}", file=sys.stderr)
        return 2

    if args.verbose:
        settings['DEBUG'] = True

    if args.command != 'encrypt-secret':
        configure_logging(settings)

    try:
        return args.func(settings, args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except SQLAlchemyError as e:
        print(f"Run history error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
