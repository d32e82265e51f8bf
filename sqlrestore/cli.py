import os
import sys
import time
import logging
import argparse
import traceback
from datetime import datetime

from .config import load_config
from .connection import SqlCredential, SqlSession
from .errors import RestoreError
from .history import get_backup_history, read_backup_header, scan_backup_folder
from .models import RestoreOptions
from .planner import select_backup_chain
from .runner import restore_database

logger = logging.getLogger('sqlrestore')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


# ================= LOGGING SETUP =================

def setup_logging(log_file=None, level='INFO'):
    """Log to a file and to the console with the same format."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setLevel(root.level)
    console.setFormatter(formatter)
    root.addHandler(console)


def progress_callback(info):
    """Callback function for restore progress updates."""
    if 'percent_complete' in info:
        logger.info(f"Progress: {info['percent_complete']:.1f}% complete")
    elif 'status' in info:
        logger.info(f"Status: {info['status']}")
    if 'error' in info:
        logger.error(f"Error: {info['error']}")


def parse_file_map(values):
    mapping = {}
    for value in values or []:
        logical, sep, physical = value.partition('=')
        if not sep or not logical or not physical:
            raise argparse.ArgumentTypeError(f"File mapping must be LOGICAL=PHYSICAL, got '{value}'")
        mapping[logical] = physical
    return mapping


def parse_restore_time(value):
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid restore time '{value}', expected ISO format")


def build_parser():
    parser = argparse.ArgumentParser(
        prog='sqlrestore',
        description='Plan and run SQL Server restores from full, differential and log backups.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sqlrestore --server SQL01 --path D:\\BACKUP\\Sales --replace
  sqlrestore --server SQL01 --database Sales_Copy --path D:\\BACKUP\\Sales \\
      --data-dir E:\\SQLData --log-dir F:\\SQLLogs --restore-time 2025-01-31T18:00:00
  sqlrestore --server SQL01 --database Sales --from-history --continue
""",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--path', action='append', help='Backup file or folder (repeatable)')
    source.add_argument('--from-history', action='store_true',
                        help='Read the backup chain from msdb history (trusted history)')

    parser.add_argument('--server', help='SQL Server instance')
    parser.add_argument('--database', help='Target database (defaults to the backed up name)')
    parser.add_argument('--username', help='SQL login (default: Windows authentication)')
    parser.add_argument('--password', default=os.environ.get('SQLRESTORE_PASSWORD'),
                        help='SQL login password')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--log-file', help='Log file path')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    parser.add_argument('--recurse', action='store_true', help='Scan backup folders recursively')
    parser.add_argument('--data-dir', help='Destination directory for data files')
    parser.add_argument('--log-dir', help='Destination directory for log files')
    parser.add_argument('--filestream-dir', help='Destination directory for filestream data')
    parser.add_argument('--default-dirs', action='store_true',
                        help='Relocate files to the instance default data and log directories')
    parser.add_argument('--file-map', action='append', metavar='LOGICAL=PHYSICAL',
                        help='Explicit file relocation (repeatable)')
    parser.add_argument('--prefix', default='', help='Prefix for relocated file names')
    parser.add_argument('--suffix', default='', help='Suffix for relocated file names')
    parser.add_argument('--replace-db-name-in-file', action='store_true',
                        help='Replace the source database name in file names')
    parser.add_argument('--restore-time', type=parse_restore_time,
                        help='Point in time to restore to (ISO format)')
    parser.add_argument('--continue', dest='continue_restore', action='store_true',
                        help='Continue a restore left in NORECOVERY')
    parser.add_argument('--standby-dir', help='Leave the database in standby, undo file here')
    parser.add_argument('--no-recovery', action='store_true', help='Leave the database restoring')
    parser.add_argument('--replace', action='store_true', help='Overwrite an existing database')
    parser.add_argument('--ignore-diff', action='store_true', help='Skip differential backups')
    parser.add_argument('--ignore-log', action='store_true', help='Skip log backups')
    parser.add_argument('--script-only', action='store_true', help='Print T-SQL, do not restore')
    parser.add_argument('--verify-only', action='store_true', help='Run RESTORE VERIFYONLY')
    parser.add_argument('--azure-credential', help='Credential name for URL backups')
    parser.add_argument('--max-transfer-size', type=int)
    parser.add_argument('--block-size', type=int)
    parser.add_argument('--buffer-count', type=int)
    parser.add_argument('--stats', type=int, help='STATS percent interval')
    parser.add_argument('--yes', '-y', action='store_true', help='Do not ask before replacing')
    return parser


def options_from_args(args, config):
    return RestoreOptions(
        destination_data_directory=args.data_dir,
        destination_log_directory=args.log_dir,
        destination_filestream_directory=args.filestream_dir,
        use_default_directories=args.default_dirs,
        file_mapping=parse_file_map(args.file_map),
        file_prefix=args.prefix,
        file_suffix=args.suffix,
        replace_db_name_in_file=args.replace_db_name_in_file,
        restore_time=args.restore_time,
        continue_restore=args.continue_restore,
        standby_directory=args.standby_dir,
        no_recovery=args.no_recovery,
        replace=args.replace,
        ignore_diff_backups=args.ignore_diff,
        ignore_log_backups=args.ignore_log,
        trusted_history=args.from_history,
        script_only=args.script_only,
        verify_only=args.verify_only,
        azure_credential=args.azure_credential,
        max_transfer_size=args.max_transfer_size,
        block_size=args.block_size,
        buffer_count=args.buffer_count,
        stats_interval=args.stats if args.stats is not None else config['stats_interval'],
    )


def collect_descriptors(session, args):
    """Read backup descriptors from the given paths or from msdb history."""
    if args.from_history:
        if not args.database:
            raise RestoreError("--from-history requires --database")
        return get_backup_history(session, args.database)

    descriptors = []
    for path in args.path:
        if os.path.isdir(path):
            descriptors.extend(scan_backup_folder(session, path, recurse=args.recurse))
        else:
            descriptors.extend(read_backup_header(session, path))
    return descriptors


def print_summary(results):
    print()
    for idx, result in enumerate(results, 1):
        status = 'OK' if result.restore_complete else ('SCRIPT' if not result.error else 'FAILED')
        print(f"{idx}. [{status}] {result.action} {result.recovery} "
              f"{result.backup_files_count} file(s), {result.backup_size} bytes, "
              f"{result.duration:.1f}s")
        for path in result.backup_files:
            print(f"     from {path}")
        for path in result.restored_files:
            print(f"     to   {path}")
        if not result.restore_complete:
            print(f"     {result.script}")


def confirm_replace(database):
    answer = input(f"\n⚠ Replace existing database '{database}'? (y/n): ")
    return answer.strip().lower() == 'y'


def run(args, config):
    if args.server:
        config['server'] = args.server
    credential = None
    if args.username:
        credential = SqlCredential(args.username, args.password or '')

    start_time = time.time()
    logger.info("=" * 80)
    logger.info("SQLRESTORE STARTED")
    logger.info(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"  Server: {config['server']}")
    logger.info(f"  Database: {args.database or '(from backup)'}")
    logger.info("=" * 80)

    try:
        options = options_from_args(args, config)
        with SqlSession(config, credential) as session:
            descriptors = collect_descriptors(session, args)
            if not descriptors:
                logger.error("No backups found")
                return False
            history_database = args.database if args.from_history else None
            descriptors = select_backup_chain(descriptors, options.restore_time, history_database,
                                              continue_restore=options.continue_restore)

            database = args.database or descriptors[0].database_name
            if options.replace and not options.script_only and not args.yes:
                if session.database_state(database) is not None and not confirm_replace(database):
                    logger.info("User cancelled restoration")
                    return False

            success, payload = restore_database(descriptors, database=args.database,
                                                options=options, config=config,
                                                session=session, callback=progress_callback,
                                                monitor_progress=True)
        if success:
            print_summary(payload)
            return True
        logger.error(f"❌ {payload}")
        return False

    except KeyboardInterrupt:
        logger.warning("Restoration cancelled by user (Ctrl+C)")
        return False
    except (RestoreError, argparse.ArgumentTypeError) as e:
        logger.error(f"❌ {str(e)}")
        return False
    except Exception as e:
        logger.error(f"Unexpected error in restoration: {str(e)}")
        logger.debug(traceback.format_exc())
        return False
    finally:
        elapsed_time = time.time() - start_time
        logger.info(f"Script execution time: {elapsed_time/60:.2f} minutes")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    setup_logging(args.log_file or config['log_file'], 'DEBUG' if args.verbose else config['log_level'])
    return 0 if run(args, config) else 1


if __name__ == "__main__":
    sys.exit(main())
