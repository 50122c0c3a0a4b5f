#!/usr/bin/env python3
"""
filehasher - file integrity tracker with content backup and restore
"""

import argparse
import logging
import sys
from enum import IntEnum
from logging.handlers import RotatingFileHandler
from pathlib import Path

import colorlog

from config import load_config
from confirm import AutoConfirm, ConsoleConfirm
from constants import APP_VERSION as __version__
from controller import MODE_BACKUP, MODE_HASH, MODE_RESTORE, BackupRestoreController
from database import FileHasherDatabase
from hashing import HashingService
from metrics import MetricsCollector
from reconcile import RunContext
from scanner import FileScanner, clean_unrelated_files
from scheduler import WorkScheduler
from status import display_status, format_run_summary

CONSOLE_HANDLER_NAME = 'filehasher-console'
FILE_HANDLER_NAME = 'filehasher-file'
HELP_ARGS = ('/?', '-h', '--help')


class ExitCode(IntEnum):
    OK = 0
    ERROR = 1
    PATH_FAILURES = 3


def setup_logging(verbosity=0, quiet=False, log_file=None):
    """Setup logging with color support and verbosity levels.

    Safe to call more than once: handlers installed by an earlier call are
    replaced.
    """
    if quiet:
        level = logging.ERROR
    elif verbosity == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if handler.name in (CONSOLE_HANDLER_NAME, FILE_HANDLER_NAME):
            root_logger.removeHandler(handler)
            handler.close()

    # Console handler with color
    console_handler = colorlog.StreamHandler()
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            '%(log_color)s%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )
    )
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.set_name(FILE_HANDLER_NAME)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
        )
        root_logger.addHandler(file_handler)
        logging.getLogger('filehasher').debug(f"Logging to file: {log_file}")

    return logging.getLogger('filehasher')


def create_parser():
    """Create argument parser.

    Run options keep the single-dash spelling of earlier releases (-backup,
    -threads 8); abbreviations are disabled so they never collide.
    """
    parser = argparse.ArgumentParser(
        prog='filehasher',
        description='Track file hashes under a folder, back up file content and restore it',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
        epilog="""
Examples:
  filehasher ~/docs txt,md -hash               # Record hashes only
  filehasher ~/docs txt,md -backup -threads 8  # Hash and back up content
  filehasher ~/docs txt,md -restore -prompt    # Restore drifted files, asking first
  filehasher --status                          # Show database report
        """
    )

    parser.add_argument('root', nargs='?',
                        help='Root folder path')
    parser.add_argument('extensions', nargs='?',
                        help='File extensions list (comma separated)')

    # Run mode, -backup wins over -restore which wins over -hash
    mode_group = parser.add_argument_group('run mode')
    mode_group.add_argument('-backup', action='store_true',
                            help='Hash files and store their content in the db')
    mode_group.add_argument('-restore', action='store_true',
                            help='Restore modified or deleted files from the db')
    mode_group.add_argument('-hash', action='store_true',
                            help='Hash files without storing their content')

    # Run options
    parser.add_argument('-threads', type=int, default=None, metavar='QTY',
                        help='Worker threads, 1-16 (default: from config, 4)')
    parser.add_argument('-prompt', action='store_true',
                        help='Ask before every db update or file restore')
    parser.add_argument('-clean', action='store_true',
                        help='After the run, delete files whose extension is not listed')
    parser.add_argument('-optimize', action='store_true',
                        help='After the run, drop orphaned blobs and vacuum the db')
    parser.add_argument('-wait', action='store_true',
                        help='Wait for ENTER before exiting')

    # General options
    parser.add_argument('--config', type=str, default=None,
                        help='Config file (default: $FILEHASHER_CONFIG or ~/.filehasher/config.toml)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Append log output to this file (default: from config)')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress non-error output')
    parser.add_argument('--status', action='store_true',
                        help='Show database report and exit')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    parser.add_argument('-h', '--help', action='store_true',
                        help='Show program usage and exit')

    # Hidden debug flag
    parser.add_argument('--debug-sql', action='store_true',
                        help=argparse.SUPPRESS)

    return parser


def print_usage(parser):
    print(f"filehasher v{__version__}")
    print("Program usage:")
    print('  filehasher "Root folder path" "File extensions list (comma separated)" '
          "[-backup] [-restore] [-hash] [-threads 'qty'] [-wait] [-clean] [-prompt] [-optimize]")
    print()
    parser.print_help()


def select_mode(args):
    if args.backup:
        return MODE_BACKUP
    if args.restore:
        return MODE_RESTORE
    if args.hash:
        return MODE_HASH
    return None


def open_store(config, args):
    return FileHasherDatabase(config.db_path, timeout=config.db_timeout, debug_sql=args.debug_sql)


def run(args, config, logger):
    """Run one reconciliation pass plus the requested post-run steps"""
    mode = select_mode(args)
    threads = args.threads if args.threads is not None else config.threads
    scheduler = WorkScheduler(threads)

    # The store, the config and the run log never count as monitored files
    exclude = [config.db_path, Path(f"{config.db_path}-journal")]
    if config.config_path:
        exclude.append(config.config_path)
    if args.log_file or config.log_file:
        exclude.append(Path(args.log_file or config.log_file))

    scanner = FileScanner(args.root, args.extensions, exclude=exclude)
    if not scanner.root.is_dir():
        raise FileNotFoundError(f"Directory '{args.root}' doesn't exist")

    confirmer = ConsoleConfirm() if args.prompt else AutoConfirm()

    logger.info(f"Root folder path = {scanner.root}")
    logger.info(f"File extensions = {','.join(sorted(scanner.extensions))}")
    logger.info(f"Threads = {threads}")
    logger.info(f"Mode = {mode or 'none'}")
    logger.debug(f"DB update prompt = {args.prompt}")
    logger.debug(f"Folder cleanup scheduled = {args.clean}")
    logger.debug(f"DB optimization scheduled = {args.optimize}")

    store = open_store(config, args)
    exit_code = ExitCode.OK

    if mode is None:
        logger.info("No run mode selected (-backup, -restore or -hash)")
        logger.info(f"Total file paths in DB: {store.count()}")
        logger.info(f"DB revision: {store.get_revision()}")
    else:
        context = RunContext(
            scanner=scanner,
            store=store,
            hasher=HashingService(config.hash_algorithm),
            confirmer=confirmer,
            metrics=MetricsCollector(),
            backup=(mode == MODE_BACKUP),
        )
        controller = BackupRestoreController(context, scheduler)
        runners = {
            MODE_BACKUP: controller.run_backup,
            MODE_HASH: controller.run_hash,
            MODE_RESTORE: controller.run_restore,
        }
        summary = runners[mode]()
        if not args.quiet:
            print(format_run_summary(summary))
        if not summary.ok:
            exit_code = ExitCode.PATH_FAILURES

    if args.optimize:
        logger.info("Optimizing db")
        store.compact()

    if args.clean:
        clean_unrelated_files(scanner, confirmer)

    return exit_code


def main(argv=None):
    """Main entry point"""
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = create_parser()

    if len(argv) == 1 and argv[0] in HELP_ARGS:
        print_usage(parser)
        return ExitCode.OK

    args = parser.parse_args(argv)
    if args.help or (not args.status and not (args.root and args.extensions)):
        print_usage(parser)
        return ExitCode.OK

    logger = setup_logging(args.verbose, args.quiet)
    try:
        config = load_config(args.config)
        log_file = args.log_file or config.log_file
        if log_file:
            logger = setup_logging(args.verbose, args.quiet, log_file)

        logger.info(f"filehasher v{__version__} starting...")
        logger.debug(f"Command line args: {argv}")

        if args.status:
            display_status(open_store(config, args), root=args.root)
            return ExitCode.OK

        return run(args, config, logger)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return ExitCode.ERROR
    except Exception as e:
        logger.exception(f"EXCEPTION {e}")
        return ExitCode.ERROR
    finally:
        if args.wait:
            print("Press ENTER to exit")
            sys.stdin.readline()


if __name__ == '__main__':
    sys.exit(main())
