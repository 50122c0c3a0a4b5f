"""
Reconciliation of stored records against the live filesystem

A run diffs two snapshots: the records in the store and the paths found by
the scanner. Every path in either snapshot gets exactly one classification:

    unchanged         record and file agree on the timestamp
    metadata-refresh  timestamp differs, content still hashes to the stored digest
    content-modified  timestamp and digest differ
    deleted           record exists, file does not
    new               file exists, record does not

Changes (everything except unchanged and metadata-refresh) pass through the
run's Confirmer before they are applied. A declined change leaves the store
and the filesystem untouched.
"""

import logging
import os
from collections import namedtuple
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from confirm import AutoConfirm, Confirmer
from database import FileHasherDatabase, FileRecord
from exceptions import StoreError
from hashing import HashingService, normalize_algorithm
from metrics import MetricsCollector
from scanner import FileScanner

logger = logging.getLogger('filehasher.reconcile')


class Classification(Enum):
    UNCHANGED = 'unchanged'
    METADATA_REFRESH = 'metadata-refresh'
    CONTENT_MODIFIED = 'content-modified'
    DELETED = 'deleted'
    NEW = 'new'


class Resolution(Enum):
    APPLIED = 'applied'
    DECLINED = 'declined'
    NO_ACTION = 'no-action'


@dataclass(frozen=True)
class WorkItem:
    """One unit of work: a path with its record (if any) and disk presence"""
    path: str
    record: Optional[FileRecord] = None
    on_disk: bool = True

    def __str__(self):
        return self.path


@dataclass(frozen=True)
class PathDecision:
    """Final state of one path after a run.

    record is the record as it stands in the store afterwards, None when the
    path has no record (deleted, or new and declined).
    """
    path: str
    classification: Classification
    resolution: Resolution
    record: Optional[FileRecord] = None


@dataclass
class DiffPlan:
    """Full outer join of records and scanned paths"""
    matched: List[FileRecord] = field(default_factory=list)
    missing: List[FileRecord] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)

    def tracked_items(self):
        """Work items for every record, sorted by path"""
        items = [WorkItem(r.path, r, True) for r in self.matched]
        items += [WorkItem(r.path, r, False) for r in self.missing]
        return sorted(items, key=lambda item: item.path)

    def untracked_items(self):
        return [WorkItem(path, None, True) for path in self.untracked]

    def all_items(self):
        return sorted(self.tracked_items() + self.untracked_items(), key=lambda item: item.path)


def diff(records, scanned_paths):
    """Join records and scanned paths on exact path equality.

    Both inputs are sorted here, so callers may pass them in any order.
    """
    records = sorted(records, key=lambda r: r.path)
    paths = sorted(set(scanned_paths))
    plan = DiffPlan()

    i = j = 0
    while i < len(records) and j < len(paths):
        record_path = records[i].path
        path = paths[j]
        if record_path == path:
            plan.matched.append(records[i])
            i += 1
            j += 1
        elif record_path < path:
            plan.missing.append(records[i])
            i += 1
        else:
            plan.untracked.append(path)
            j += 1

    plan.missing.extend(records[i:])
    plan.untracked.extend(paths[j:])
    return plan


@dataclass
class RunContext:
    """Everything one run's workers share"""
    scanner: FileScanner
    store: FileHasherDatabase
    hasher: HashingService
    confirmer: Confirmer = field(default_factory=AutoConfirm)
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    backup: bool = False

    @property
    def root(self):
        return self.scanner.root

    def absolute(self, rel_path):
        return self.scanner.absolute(rel_path)


# Outcome of comparing a tracked file with its record. content is the file's
# bytes when they were read for the comparison, digest the (tag, hex) pair
# computed with the record's algorithm.
_Inspection = namedtuple('_Inspection', 'classification mtime content digest')


class ReconciliationEngine:
    """Per-path decisions for backup, hash-only and restore runs.

    Methods are called concurrently from scheduler workers. Each call only
    touches its own path's file and record; shared counters go through the
    context's MetricsCollector.
    """

    def __init__(self, context):
        self.context = context

    # ==========================================================================
    # HELPERS
    # ==========================================================================

    def _confirm(self, message):
        return self.context.confirmer.confirm(message)

    def _declined(self, path, classification, record):
        self.context.metrics.inc('declined')
        logger.info(f"Skipped '{path}' ({classification.value}), declined by user")
        return PathDecision(path, classification, Resolution.DECLINED, record)

    def _unchanged(self, record):
        self.context.metrics.inc('unchanged')
        return PathDecision(record.path, Classification.UNCHANGED, Resolution.NO_ACTION, record)

    def _inspect(self, record, keep_content):
        """Compare a tracked file on disk with its record"""
        file_path = self.context.absolute(record.path)
        mtime = os.stat(file_path).st_mtime_ns

        if mtime == record.last_write_time:
            return _Inspection(Classification.UNCHANGED, mtime, None, None)

        hasher = self.context.hasher
        content = file_path.read_bytes() if keep_content else None

        if not hasher.supports(record.hash_algorithm):
            logger.warning(
                f"'{record.path}' was hashed using unsupported algorithm "
                f"{record.hash_algorithm}, treating as modified"
            )
            return _Inspection(Classification.CONTENT_MODIFIED, mtime, content, None)

        if content is not None:
            digest = hasher.digest(content, record.hash_algorithm)
        else:
            digest = hasher.hash_file(file_path, record.hash_algorithm)

        if digest[1] == record.file_hash.lower():
            return _Inspection(Classification.METADATA_REFRESH, mtime, content, digest)
        return _Inspection(Classification.CONTENT_MODIFIED, mtime, content, digest)

    def _refresh_timestamp(self, record, mtime):
        refreshed = replace(record, last_write_time=mtime)
        self.context.store.update_last_write_time(refreshed)
        self.context.metrics.inc('metadata_refreshed')
        logger.info(f"'{record.path}' has different last write timestamp, but hashes are identical")
        return PathDecision(record.path, Classification.METADATA_REFRESH, Resolution.APPLIED, refreshed)

    # ==========================================================================
    # BACKUP / HASH-ONLY
    # ==========================================================================

    def reconcile(self, item):
        """Classify one path and bring the store in line with the file"""
        if item.record is None:
            return self._handle_new(item.path)
        if not item.on_disk:
            return self._handle_deleted(item.record)
        return self._handle_tracked(item.record)

    def _store_missing_blob(self, record, inspection):
        """Back up a tracked file whose record has no blob yet.

        Records created or last changed by a hash-only run carry no content.
        The file is stored if it still hashes to the record's digest;
        otherwise the inspection is turned into a content modification.
        """
        hasher = self.context.hasher
        content = inspection.content
        if content is None:
            content = self.context.absolute(record.path).read_bytes()
            if not hasher.supports(record.hash_algorithm):
                return inspection._replace(classification=Classification.CONTENT_MODIFIED, content=content)
            digest = hasher.digest(content, record.hash_algorithm)
            if digest[1] != record.file_hash.lower():
                return _Inspection(Classification.CONTENT_MODIFIED, inspection.mtime, content, digest)

        self.context.store.update_blob(record.record_id, content)
        self.context.metrics.inc('backfilled')
        self.context.metrics.inc('bytes_stored', len(content))
        logger.info(f"FILE_BACKFILLED '{record.path}' ({record.short_hash})")
        return inspection

    def _handle_tracked(self, record):
        inspection = self._inspect(record, keep_content=self.context.backup)

        if (self.context.backup
                and inspection.classification is not Classification.CONTENT_MODIFIED
                and not self.context.store.has_blob(record.record_id)):
            inspection = self._store_missing_blob(record, inspection)

        if inspection.classification is Classification.UNCHANGED:
            return self._unchanged(record)
        if inspection.classification is Classification.METADATA_REFRESH:
            return self._refresh_timestamp(record, inspection.mtime)

        if not self._confirm(f"'{record.path}' was modified. Update db? (y/n):"):
            return self._declined(record.path, Classification.CONTENT_MODIFIED, record)

        hasher = self.context.hasher
        if inspection.digest is not None and inspection.digest[0] == hasher.algorithm:
            algorithm, digest = inspection.digest
        elif inspection.content is not None:
            algorithm, digest = hasher.digest(inspection.content)
        else:
            algorithm, digest = hasher.hash_file(self.context.absolute(record.path))

        if normalize_algorithm(record.hash_algorithm) != algorithm:
            logger.info(f"'{record.path}' was hashed using {record.hash_algorithm} - update using {algorithm}")

        updated = replace(
            record,
            last_write_time=inspection.mtime,
            hash_algorithm=algorithm,
            file_hash=digest,
        )
        self.context.store.update(updated)
        if self.context.backup:
            self.context.store.update_blob(record.record_id, inspection.content)
            self.context.metrics.inc('bytes_stored', len(inspection.content))
        else:
            # The old content no longer matches the new digest
            self.context.store.delete_blob(record.record_id)

        self.context.metrics.inc('modified')
        logger.info(f"FILE_MODIFIED '{updated.path}' ({updated.short_hash})")
        return PathDecision(record.path, Classification.CONTENT_MODIFIED, Resolution.APPLIED, updated)

    def _handle_deleted(self, record):
        if not self._confirm(f"'{record.path}' was deleted. Update db? (y/n):"):
            return self._declined(record.path, Classification.DELETED, record)

        self.context.store.delete(record)
        # Blob goes with its record in every mode
        self.context.store.delete_blob(record.record_id)

        self.context.metrics.inc('deleted')
        logger.info(f"FILE_DELETED '{record.path}' ({record.short_hash})")
        return PathDecision(record.path, Classification.DELETED, Resolution.APPLIED, None)

    def _handle_new(self, path):
        if not self._confirm(f"'{path}' was added. Update db? (y/n):"):
            return self._declined(path, Classification.NEW, None)

        hasher = self.context.hasher
        file_path = self.context.absolute(path)
        mtime = os.stat(file_path).st_mtime_ns

        content = None
        if self.context.backup:
            content = file_path.read_bytes()
            algorithm, digest = hasher.digest(content)
        else:
            algorithm, digest = hasher.hash_file(file_path)

        record = self.context.store.insert(FileRecord(
            path=path,
            last_write_time=mtime,
            hash_algorithm=algorithm,
            file_hash=digest,
        ))
        if content is not None:
            self.context.store.insert_blob(record.record_id, content)
            self.context.metrics.inc('bytes_stored', len(content))

        self.context.metrics.inc('new')
        logger.info(f"FILE_NEW '{record.path}' ({record.short_hash})")
        return PathDecision(path, Classification.NEW, Resolution.APPLIED, record)

    # ==========================================================================
    # RESTORE
    # ==========================================================================

    def restore(self, item):
        """Classify one path and push stored content back to disk if it drifted.

        The store is treated as ground truth: digests are never rewritten,
        only the timestamp of a restored file is refreshed.
        """
        if item.record is None:
            logger.debug(f"'{item.path}' is not in the database, nothing to restore")
            return PathDecision(item.path, Classification.NEW, Resolution.NO_ACTION, None)

        record = item.record
        if not item.on_disk:
            if not self._confirm(f"'{record.path}' was deleted. Restore from db? (y/n):"):
                return self._declined(record.path, Classification.DELETED, record)
            return self._restore_file(record, Classification.DELETED)

        inspection = self._inspect(record, keep_content=False)
        if inspection.classification is Classification.UNCHANGED:
            return self._unchanged(record)
        if inspection.classification is Classification.METADATA_REFRESH:
            return self._refresh_timestamp(record, inspection.mtime)

        if not self._confirm(f"'{record.path}' was modified. Restore from db? (y/n):"):
            return self._declined(record.path, Classification.CONTENT_MODIFIED, record)
        return self._restore_file(record, Classification.CONTENT_MODIFIED)

    def _restore_file(self, record, classification):
        content = self.context.store.read_blob(record.record_id)

        hasher = self.context.hasher
        if hasher.supports(record.hash_algorithm):
            _, digest = hasher.digest(content, record.hash_algorithm)
            if digest != record.file_hash.lower():
                raise StoreError(f"Stored content for '{record.path}' does not match its recorded hash")

        file_path = self.context.absolute(record.path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(content)

        restored = replace(record, last_write_time=os.stat(file_path).st_mtime_ns)
        self.context.store.update_last_write_time(restored)

        self.context.metrics.inc('restored')
        self.context.metrics.inc('bytes_restored', len(content))
        logger.info(f"FILE_RESTORED '{record.path}' ({record.short_hash})")
        return PathDecision(record.path, classification, Resolution.APPLIED, restored)
