"""
Run orchestration for filehasher

A run takes two independent snapshots (stored records and scanned paths),
joins them, fans the per-path work out on the WorkScheduler and, once every
task has finished, builds the next-state record list from the task results.
Backup and hash-only runs go in two phases: tracked records first, then the
paths that have no record yet.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from exceptions import ConfigurationError
from metrics import MetricsContext
from reconcile import ReconciliationEngine, diff

logger = logging.getLogger('filehasher.controller')

MODE_BACKUP = 'backup'
MODE_HASH = 'hash'
MODE_RESTORE = 'restore'


@dataclass
class RunSummary:
    """What one run did, assembled after the final barrier"""
    mode: str
    counters: Dict[str, int] = field(default_factory=dict)
    decisions: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    records: list = field(default_factory=list)
    total_records: int = 0
    revision: int = 0
    elapsed: float = 0.0

    @property
    def changes(self) -> int:
        """Applied new + modified + deleted + backfilled (restored for restore runs)"""
        c = self.counters
        if self.mode == MODE_RESTORE:
            return c.get('restored', 0)
        return c.get('new', 0) + c.get('modified', 0) + c.get('deleted', 0) + c.get('backfilled', 0)

    @property
    def ok(self) -> bool:
        return not self.failures


class BackupRestoreController:
    """Drives backup, hash-only and restore runs over one RunContext"""

    def __init__(self, context, scheduler):
        self.context = context
        self.scheduler = scheduler
        self.engine = ReconciliationEngine(context)

    def snapshot(self):
        """Read both snapshots and join them"""
        records = self.context.store.list_all()
        paths = self.context.scanner.scan()
        logger.info(
            f"Found {len(paths)} files under {self.context.root}, "
            f"{len(records)} file paths in db"
        )
        plan = diff(records, paths)
        logger.debug(
            f"Matched: {len(plan.matched)}, missing: {len(plan.missing)}, "
            f"untracked: {len(plan.untracked)}"
        )
        return plan

    def _collect(self, report):
        """Next-state records from one phase.

        Failed paths keep the record they had when the run started.
        """
        records = []
        for outcome in report.outcomes:
            if outcome.ok:
                if outcome.result.record is not None:
                    records.append(outcome.result.record)
            else:
                self.context.metrics.inc('failed')
                if outcome.item.record is not None:
                    records.append(outcome.item.record)
        return records

    # ==========================================================================
    # RUN MODES
    # ==========================================================================

    def run_backup(self):
        """Reconcile the store with the filesystem, storing file content"""
        if not self.context.backup:
            raise ConfigurationError("Backup run needs a context with backup enabled")
        return self._run_update(MODE_BACKUP)

    def run_hash(self):
        """Reconcile the store with the filesystem, hashes only"""
        if self.context.backup:
            raise ConfigurationError("Hash-only run needs a context with backup disabled")
        return self._run_update(MODE_HASH)

    def _run_update(self, mode):
        metrics = self.context.metrics
        duration_metric = f'{mode}_duration_seconds'

        with MetricsContext(metrics, duration_metric):
            plan = self.snapshot()

            # Phase 1: every record, present or missing
            tracked = self.scheduler.run(plan.tracked_items(), self.engine.reconcile)
            records = self._collect(tracked)

            # Phase 2: files without a record
            added = self.scheduler.run(plan.untracked_items(), self.engine.reconcile)
            records += self._collect(added)

        return self._finish(
            mode,
            tracked.outcomes + added.outcomes,
            records,
            metrics.get_gauge(duration_metric),
        )

    def run_restore(self):
        """Write stored content back over drifted or missing files"""
        metrics = self.context.metrics
        duration_metric = f'{MODE_RESTORE}_duration_seconds'

        with MetricsContext(metrics, duration_metric):
            plan = self.snapshot()
            report = self.scheduler.run(plan.all_items(), self.engine.restore)
            records = self._collect(report)

        return self._finish(MODE_RESTORE, report.outcomes, records, metrics.get_gauge(duration_metric))

    # ==========================================================================
    # SUMMARY
    # ==========================================================================

    def _finish(self, mode, outcomes, records, elapsed):
        store = self.context.store
        summary = RunSummary(
            mode=mode,
            counters=self.context.metrics.counters(),
            decisions=[o.result for o in outcomes if o.ok],
            failures=[o for o in outcomes if not o.ok],
            records=sorted(records, key=lambda r: r.path),
            total_records=store.count(),
            revision=store.get_revision(),
            elapsed=elapsed,
        )
        self._log_summary(summary)
        self.context.metrics.log_structured(
            'run_complete',
            mode=mode,
            elapsed_seconds=round(elapsed, 3),
            total_records=summary.total_records,
            revision=summary.revision,
            **summary.counters,
        )
        return summary

    def _log_summary(self, summary):
        c = summary.counters
        if summary.mode == MODE_RESTORE:
            if c.get('restored'):
                logger.info(f"Files restored: {c['restored']}")
            else:
                logger.info("Restore not required")
        elif summary.changes:
            if c.get('modified'):
                logger.info(f"Files modified: {c['modified']}")
            if c.get('deleted'):
                logger.info(f"Files deleted: {c['deleted']}")
            if c.get('new'):
                logger.info(f"Files new: {c['new']}")
            if c.get('backfilled'):
                logger.info(f"Files backed up: {c['backfilled']}")
        else:
            logger.info("Update not required")

        if c.get('metadata_refreshed'):
            logger.info(f"Timestamps refreshed: {c['metadata_refreshed']}")
        if c.get('declined'):
            logger.info(f"Changes declined: {c['declined']}")
        if summary.failures:
            logger.warning(f"Files failed: {len(summary.failures)}")
            for outcome in summary.failures:
                logger.warning(f"  {outcome.item}: {outcome.error}")

        logger.info(f"Time elapsed: {summary.elapsed:.3f}s")
        logger.info(f"Total file paths in DB: {summary.total_records}")
        logger.info(f"DB revision: {summary.revision}")
