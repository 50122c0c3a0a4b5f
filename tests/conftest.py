import os

import pytest

from confirm import AutoConfirm, Confirmer
from database import FileHasherDatabase
from hashing import HashingService
from metrics import MetricsCollector
from reconcile import RunContext
from scanner import FileScanner

# 2020-09-13, far enough from "now" that a fresh write never collides with it
BASE_NS = 1_600_000_000_000_000_000


class ScriptedConfirm(Confirmer):
    """Answers prompts from a fixed verdict and remembers what was asked"""

    def __init__(self, answer):
        self.answer = answer
        self.messages = []

    def confirm(self, message):
        self.messages.append(message)
        return self.answer


@pytest.fixture
def scripted_confirm():
    return ScriptedConfirm


@pytest.fixture
def write_file():
    def _write(path, content, mtime_ns=BASE_NS):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        if mtime_ns is not None:
            os.utime(path, ns=(mtime_ns, mtime_ns))
        return path
    return _write


@pytest.fixture
def root(tmp_path):
    path = tmp_path / 'root'
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path):
    return FileHasherDatabase(tmp_path / 'db' / 'filehasher.db')


@pytest.fixture
def make_context(root, store):
    def _make(backup=True, confirmer=None, extensions='txt', algorithm='sha256'):
        return RunContext(
            scanner=FileScanner(root, extensions),
            store=store,
            hasher=HashingService(algorithm),
            confirmer=confirmer or AutoConfirm(),
            metrics=MetricsCollector(),
            backup=backup,
        )
    return _make
