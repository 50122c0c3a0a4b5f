"""
Status display for filehasher
"""

import logging
from datetime import datetime

import humanize
import psutil
from tabulate import tabulate

from controller import MODE_RESTORE
from metrics import RUN_COUNTERS

logger = logging.getLogger('filehasher.status')


def memory_usage():
    """Resident memory of this process in bytes"""
    return psutil.Process().memory_info().rss


def display_status(store, root=None):
    """Print a report on the contents of a store.

    Args:
        store: FileHasherDatabase to report on
        root: Monitored folder, shown in the header when given
    """
    stats = store.get_statistics()

    print("\n" + "=" * 80)
    print(f"filehasher Status Report - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 80)

    print("\nDATABASE")
    print(f"  Path: {store.db_path}")
    if root:
        print(f"  Folder: {root}")
    print(f"  Schema version: v{stats['schema_version']}")
    print(f"  Revision: {stats['revision']:,}")
    print(f"  Size on disk: {humanize.naturalsize(stats['database_bytes'])}")

    print("\nFILE STATISTICS")
    print(f"  Total file paths in DB: {stats['total_records']:,}")
    print(f"  Files with content backup: {stats['total_blobs']:,}")
    print(f"  Files with hash only: {stats['records_without_blob']:,}")
    print(f"  Stored content: {humanize.naturalsize(stats['blob_bytes'])}")

    breakdown = store.get_algorithm_breakdown()
    if breakdown:
        print("\nHASH ALGORITHMS")
        print(tabulate(breakdown, headers=['Algorithm', 'Files'], tablefmt='simple'))

    largest = store.get_largest_blobs()
    if largest:
        print("\nLARGEST STORED FILES")
        table_data = [
            [i, path, humanize.naturalsize(size)]
            for i, (path, size) in enumerate(largest, 1)
        ]
        print(tabulate(table_data, headers=['#', 'Path', 'Size'], tablefmt='simple'))

    print()
    return stats


def format_run_summary(summary):
    """Render a RunSummary as a table for the console"""
    counters = summary.counters
    names = [name for name in RUN_COUNTERS if name != 'restored' or summary.mode == MODE_RESTORE]

    rows = [[name.replace('_', ' ').capitalize(), f"{counters.get(name, 0):,}"] for name in names]
    rows.append(['Total file paths in DB', f"{summary.total_records:,}"])
    rows.append(['DB revision', summary.revision])
    rows.append(['Time elapsed', humanize.precisedelta(summary.elapsed, minimum_unit='milliseconds')])
    rows.append(['Memory', humanize.naturalsize(memory_usage())])

    title = f"{summary.mode.capitalize()} summary"
    return f"{title}\n{tabulate(rows, tablefmt='simple')}"
