"""
Content hashing for filehasher

Digests are lowercase hex strings tagged with the algorithm that produced
them. sha256 is the default for new records; the other algorithms exist so
that records written with an older or faster algorithm can still be verified.
"""

import hashlib
import logging
import os

import xxhash

from constants import DEFAULT_HASH_ALGORITHM
from exceptions import FileChangedError

logger = logging.getLogger('filehasher.hashing')

CHUNK_SIZE = 1024 * 1024

_ALGORITHMS = {
    'sha256': hashlib.sha256,
    'sha1': hashlib.sha1,
    'sha512': hashlib.sha512,
    'md5': hashlib.md5,
    'blake2b': hashlib.blake2b,
    'xxh64': xxhash.xxh64,
    'xxh3_64': xxhash.xxh3_64,
    'xxh128': xxhash.xxh3_128,
}


def normalize_algorithm(name):
    """Map an algorithm tag to its canonical form ('SHA-256' -> 'sha256')"""
    if not name:
        return ''
    return name.strip().lower().replace('-', '')


def supported_algorithms():
    return sorted(_ALGORITHMS)


class HashingService:
    """Computes tagged content digests.

    Stateless apart from its configured default algorithm, so a single
    instance is shared by all workers of a run.
    """

    def __init__(self, algorithm=DEFAULT_HASH_ALGORITHM, chunk_size=CHUNK_SIZE):
        self.algorithm = normalize_algorithm(algorithm)
        if self.algorithm not in _ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        self.chunk_size = chunk_size

    def supports(self, algorithm):
        return normalize_algorithm(algorithm) in _ALGORITHMS

    def _new_hasher(self, algorithm):
        tag = normalize_algorithm(algorithm) if algorithm else self.algorithm
        try:
            return tag, _ALGORITHMS[tag]()
        except KeyError:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}") from None

    def digest(self, data, algorithm=None):
        """Hash a bytes object.

        Args:
            data: Content to hash
            algorithm: Algorithm tag, defaults to the service's algorithm

        Returns:
            Tuple of (algorithm tag, lowercase hex digest)
        """
        tag, hasher = self._new_hasher(algorithm)
        hasher.update(data)
        return tag, hasher.hexdigest()

    def digest_stream(self, stream, algorithm=None):
        """Hash a binary stream in chunks; read errors propagate unchanged"""
        tag, hasher = self._new_hasher(algorithm)
        while chunk := stream.read(self.chunk_size):
            hasher.update(chunk)
        return tag, hasher.hexdigest()

    def hash_file(self, file_path, algorithm=None):
        """Hash a file, detecting changes made while it was being read.

        Raises:
            OSError: File could not be opened or read
            FileChangedError: Size or mtime changed during hashing
        """
        stat_before = os.stat(file_path)

        with open(file_path, 'rb') as f:
            result = self.digest_stream(f, algorithm)

        stat_after = os.stat(file_path)
        if (stat_after.st_mtime_ns != stat_before.st_mtime_ns or
                stat_after.st_size != stat_before.st_size):
            logger.warning(f"File changed during hashing: {file_path}")
            raise FileChangedError(f"File changed during hashing: {file_path}")

        return result
