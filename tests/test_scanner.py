import logging
import os

import pytest

from confirm import AutoConfirm
from scanner import FileScanner, clean_unrelated_files, parse_extensions


def test_parse_extensions():
    assert parse_extensions('txt,.MP3, jpg ') == {'.txt', '.mp3', '.jpg'}
    assert parse_extensions(['txt', 'md,']) == {'.txt', '.md'}
    assert parse_extensions('') == frozenset()


def test_scan_returns_sorted_relative_paths(root, write_file):
    write_file(root / 'b.txt', b'b')
    write_file(root / 'a.txt', b'a')
    write_file(root / 'sub' / 'deep' / 'c.txt', b'c')
    write_file(root / 'skip.bin', b'x')

    assert FileScanner(root, 'txt').scan() == ['a.txt', 'b.txt', 'sub/deep/c.txt']


def test_extension_match_ignores_case(root, write_file):
    write_file(root / 'LOUD.TXT', b'x')
    write_file(root / 'quiet.txt', b'x')
    assert FileScanner(root, '.Txt').scan() == ['LOUD.TXT', 'quiet.txt']


def test_empty_root(root):
    assert FileScanner(root, 'txt').scan() == []


def test_missing_root(tmp_path):
    with pytest.raises(FileNotFoundError, match="doesn't exist"):
        FileScanner(tmp_path / 'nope', 'txt').scan()


def test_symlinks_are_skipped(root, write_file, tmp_path):
    target = write_file(tmp_path / 'outside.txt', b'x')
    try:
        os.symlink(target, root / 'link.txt')
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")
    write_file(root / 'real.txt', b'x')

    assert FileScanner(root, 'txt').scan() == ['real.txt']


def test_excluded_paths_are_skipped(root, write_file):
    write_file(root / 'keep.txt', b'x')
    excluded = write_file(root / 'run.txt', b'x')
    assert FileScanner(root, 'txt', exclude=[excluded]).scan() == ['keep.txt']


def test_canonical_and_absolute(root):
    scanner = FileScanner(root, 'txt')
    absolute = scanner.absolute('sub/a.txt')
    assert absolute == root.resolve() / 'sub' / 'a.txt'
    assert scanner.canonical(absolute) == 'sub/a.txt'


def test_find_unrelated_files(root, write_file):
    write_file(root / 'a.txt', b'x')
    junk = write_file(root / 'sub' / 'junk.tmp', b'x')
    assert FileScanner(root, 'txt').find_unrelated_files() == [junk.resolve()]


def test_clean_unrelated_files(root, write_file, caplog):
    caplog.set_level(logging.INFO)
    keep = write_file(root / 'a.txt', b'x')
    junk = write_file(root / 'junk.tmp', b'x')

    assert clean_unrelated_files(FileScanner(root, 'txt'), AutoConfirm()) == 1
    assert keep.exists()
    assert not junk.exists()
    assert "Folder cleanup deleted files: 1" in caplog.text


def test_clean_respects_declined_confirmation(root, write_file, scripted_confirm):
    junk = write_file(root / 'junk.tmp', b'x')
    confirmer = scripted_confirm(False)

    assert clean_unrelated_files(FileScanner(root, 'txt'), confirmer) == 0
    assert junk.exists()
    assert len(confirmer.messages) == 1


def test_clean_not_required(root, write_file, caplog):
    caplog.set_level(logging.INFO)
    write_file(root / 'a.txt', b'x')
    assert clean_unrelated_files(FileScanner(root, 'txt'), AutoConfirm()) == 0
    assert "Folder cleanup not required" in caplog.text


def test_rotated_copies_of_excluded_files_are_skipped(root, write_file):
    write_file(root / 'keep.txt', b'x')
    log = write_file(root / 'run.txt', b'x')
    write_file(root / 'run.txt.1', b'x')
    write_file(root / 'run.txt.5', b'x')
    write_file(root / 'run.txt.old', b'x')

    scanner = FileScanner(root, 'txt', exclude=[log])
    assert scanner.scan() == ['keep.txt']
    assert [p.name for p in scanner.find_unrelated_files()] == ['run.txt.old']
