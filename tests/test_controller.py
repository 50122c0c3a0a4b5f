import io
import logging

import pytest

from confirm import ConsoleConfirm
from controller import MODE_BACKUP, MODE_HASH, MODE_RESTORE, BackupRestoreController
from conftest import BASE_NS
from exceptions import ConfigurationError
from hashing import HashingService
from reconcile import Classification, Resolution
from scheduler import WorkScheduler


@pytest.fixture
def run_with(make_context):
    """Run one pass in the given mode and return (summary, context)"""
    def _run(mode, threads=4, **context_kwargs):
        context = make_context(backup=(mode == MODE_BACKUP), **context_kwargs)
        controller = BackupRestoreController(context, WorkScheduler(threads))
        runner = {
            MODE_BACKUP: controller.run_backup,
            MODE_HASH: controller.run_hash,
            MODE_RESTORE: controller.run_restore,
        }[mode]
        return runner(), context
    return _run


@pytest.fixture
def tree(root, write_file):
    files = {
        'a.txt': b'alpha',
        'b.txt': b'bravo',
        'docs/c.txt': b'charlie',
    }
    for rel, content in files.items():
        write_file(root / rel, content)
    write_file(root / 'ignored.bin', b'not tracked')
    return files


def classifications(summary):
    return {d.path: d.classification for d in summary.decisions}


def test_first_backup_adds_everything(tree, store, run_with):
    summary, _ = run_with(MODE_BACKUP)

    assert summary.counters['new'] == 3
    assert summary.changes == 3
    assert summary.ok
    assert [r.path for r in store.list_all()] == sorted(tree)
    assert store.count_blobs() == 3
    assert summary.total_records == 3
    assert summary.revision == store.get_revision()


def test_second_run_is_idempotent(tree, store, run_with, caplog):
    run_with(MODE_BACKUP)
    records = store.list_all()
    revision = store.get_revision()

    caplog.set_level(logging.INFO)
    summary, _ = run_with(MODE_BACKUP)

    assert summary.changes == 0
    assert summary.counters['unchanged'] == 3
    assert store.list_all() == records
    assert store.get_revision() == revision
    assert "Update not required" in caplog.text


def test_modified_file_updates_hash_and_blob(root, tree, store, run_with, write_file):
    run_with(MODE_BACKUP)
    before = store.get_record('a.txt')
    write_file(root / 'a.txt', b'alpha v2', mtime_ns=BASE_NS + 1)

    summary, _ = run_with(MODE_BACKUP)

    assert summary.counters['modified'] == 1
    assert summary.counters['unchanged'] == 2
    after = store.get_record('a.txt')
    assert after.file_hash != before.file_hash
    assert store.read_blob(after.record_id) == b'alpha v2'


def test_deleted_file_removes_record_and_blob(root, tree, store, run_with):
    run_with(MODE_BACKUP)
    (root / 'b.txt').unlink()

    summary, _ = run_with(MODE_BACKUP)

    assert summary.counters['deleted'] == 1
    assert [r.path for r in store.list_all()] == ['a.txt', 'docs/c.txt']
    assert store.count_blobs() == 2
    assert [r.path for r in summary.records] == ['a.txt', 'docs/c.txt']


def test_restore_round_trip(root, tree, store, run_with, write_file, caplog):
    run_with(MODE_BACKUP)
    hashes = {r.path: r.file_hash for r in store.list_all()}

    write_file(root / 'a.txt', b'scribbled over', mtime_ns=BASE_NS + 1)
    (root / 'docs' / 'c.txt').unlink()
    (root / 'docs').rmdir()

    summary, _ = run_with(MODE_RESTORE)

    assert summary.counters['restored'] == 2
    for rel, content in tree.items():
        assert (root / rel).read_bytes() == content
    assert {r.path: r.file_hash for r in store.list_all()} == hashes

    caplog.set_level(logging.INFO)
    summary, _ = run_with(MODE_RESTORE)
    assert summary.changes == 0
    assert "Restore not required" in caplog.text


def test_touch_is_metadata_refresh_not_modification(root, tree, store, run_with, write_file):
    run_with(MODE_BACKUP)
    write_file(root / 'b.txt', b'bravo', mtime_ns=BASE_NS + 10**9)

    summary, _ = run_with(MODE_BACKUP)

    assert summary.counters['metadata_refreshed'] == 1
    assert summary.counters['modified'] == 0
    assert classifications(summary)['b.txt'] is Classification.METADATA_REFRESH
    assert store.get_record('b.txt').last_write_time == BASE_NS + 10**9


def test_every_path_classified_exactly_once(root, tree, store, run_with, write_file):
    run_with(MODE_BACKUP)
    write_file(root / 'a.txt', b'changed', mtime_ns=BASE_NS + 1)
    (root / 'b.txt').unlink()
    write_file(root / 'new.txt', b'fresh')

    summary, _ = run_with(MODE_BACKUP)

    paths = [d.path for d in summary.decisions]
    assert sorted(paths) == ['a.txt', 'b.txt', 'docs/c.txt', 'new.txt']
    assert len(paths) == len(set(paths))
    assert classifications(summary) == {
        'a.txt': Classification.CONTENT_MODIFIED,
        'b.txt': Classification.DELETED,
        'docs/c.txt': Classification.UNCHANGED,
        'new.txt': Classification.NEW,
    }


def test_next_state_records_match_store(root, tree, store, run_with, write_file):
    run_with(MODE_BACKUP)
    write_file(root / 'a.txt', b'changed', mtime_ns=BASE_NS + 1)
    (root / 'b.txt').unlink()
    write_file(root / 'new.txt', b'fresh')

    summary, _ = run_with(MODE_BACKUP)

    assert summary.records == store.list_all()


def test_hash_mode_stores_no_blobs(tree, store, run_with):
    summary, _ = run_with(MODE_HASH)
    assert summary.counters['new'] == 3
    assert store.count() == 3
    assert store.count_blobs() == 0


def test_single_thread_gives_same_result(tree, store, run_with):
    summary, _ = run_with(MODE_BACKUP, threads=1)
    assert summary.counters['new'] == 3
    assert store.count_blobs() == 3


def test_one_failing_path_does_not_stop_the_run(root, tree, store, run_with, write_file, monkeypatch):
    write_file(root / 'bad.txt', b'boom')

    real_digest = HashingService.digest

    def flaky_digest(self, data, algorithm=None):
        if data == b'boom':
            raise OSError("simulated read failure")
        return real_digest(self, data, algorithm)

    monkeypatch.setattr(HashingService, 'digest', flaky_digest)
    summary, _ = run_with(MODE_BACKUP)

    assert not summary.ok
    assert [str(f.item) for f in summary.failures] == ['bad.txt']
    assert summary.counters['failed'] == 1
    assert summary.counters['new'] == 3
    assert 'bad.txt' not in [r.path for r in store.list_all()]


def test_declined_prompts_change_nothing(root, tree, store, run_with):
    confirmer = ConsoleConfirm(input_stream=io.StringIO("n\n" * 3), output_stream=io.StringIO())

    summary, _ = run_with(MODE_BACKUP, confirmer=confirmer)

    assert store.count() == 0
    assert summary.counters['declined'] == 3
    assert {d.resolution for d in summary.decisions} == {Resolution.DECLINED}
    assert "was added. Update db? (y/n):" in confirmer.output_stream.getvalue()


def test_accepted_prompts_apply_changes(root, tree, store, run_with):
    confirmer = ConsoleConfirm(input_stream=io.StringIO("y\nyes\nY\n"), output_stream=io.StringIO())
    summary, _ = run_with(MODE_BACKUP, confirmer=confirmer)
    assert summary.counters['new'] == 3


def test_backup_requires_backup_context(make_context):
    controller = BackupRestoreController(make_context(backup=False), WorkScheduler(2))
    with pytest.raises(ConfigurationError):
        controller.run_backup()


def test_hash_requires_hash_context(make_context):
    controller = BackupRestoreController(make_context(backup=True), WorkScheduler(2))
    with pytest.raises(ConfigurationError):
        controller.run_hash()


def test_summary_logged(tree, run_with, caplog):
    caplog.set_level(logging.INFO)
    run_with(MODE_BACKUP)
    assert "Files new: 3" in caplog.text
    assert "Total file paths in DB: 3" in caplog.text
    assert "DB revision:" in caplog.text
    assert "METRIC:" in caplog.text


def test_hash_run_drops_stale_blob_and_backup_restores_it(root, store, run_with, write_file):
    write_file(root / 'a.txt', b'v1')
    run_with(MODE_BACKUP)
    write_file(root / 'a.txt', b'v2', mtime_ns=BASE_NS + 1)

    summary, _ = run_with(MODE_HASH)
    assert summary.counters['modified'] == 1
    assert store.count_blobs() == 0

    summary, _ = run_with(MODE_BACKUP)
    assert summary.counters['backfilled'] == 1
    assert store.read_blob(store.get_record('a.txt').record_id) == b'v2'

    (root / 'a.txt').unlink()
    summary, _ = run_with(MODE_RESTORE)
    assert summary.ok
    assert summary.counters['restored'] == 1
    assert (root / 'a.txt').read_bytes() == b'v2'


def test_backup_after_hash_stores_content(tree, store, run_with, caplog):
    run_with(MODE_HASH)
    revision = store.get_revision()

    caplog.set_level(logging.INFO)
    summary, _ = run_with(MODE_BACKUP)

    assert summary.counters['backfilled'] == 3
    assert summary.counters['unchanged'] == 3
    assert summary.changes == 3
    assert store.count_blobs() == 3
    assert store.get_revision() > revision
    assert "Files backed up: 3" in caplog.text
    assert "Update not required" not in caplog.text

    summary, _ = run_with(MODE_BACKUP)
    assert summary.changes == 0


def test_backup_after_hash_catches_unnoticed_edit(root, tree, store, run_with, write_file):
    run_with(MODE_HASH)
    # Same timestamp, different bytes: only a full read can tell
    write_file(root / 'a.txt', b'edited', mtime_ns=BASE_NS)

    summary, _ = run_with(MODE_BACKUP)

    assert classifications(summary)['a.txt'] is Classification.CONTENT_MODIFIED
    assert store.read_blob(store.get_record('a.txt').record_id) == b'edited'
    assert store.count_blobs() == 3


def test_two_workers_over_unchanged_files(root, store, run_with, write_file):
    for n in range(5):
        write_file(root / f'f{n}.txt', f'file {n}'.encode())
    run_with(MODE_BACKUP, threads=2)

    summary, _ = run_with(MODE_BACKUP, threads=2)

    assert summary.counters['unchanged'] == 5
    assert {name: value for name, value in summary.counters.items() if value} == {'unchanged': 5}
    assert summary.changes == 0


def test_summary_logs_only_nonzero_changes(root, tree, run_with, write_file, caplog):
    run_with(MODE_BACKUP)
    write_file(root / 'new.txt', b'fresh')

    caplog.set_level(logging.INFO)
    run_with(MODE_BACKUP)

    assert "Files new: 1" in caplog.text
    assert "Files modified" not in caplog.text
    assert "Files deleted" not in caplog.text
