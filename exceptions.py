"""
Exception types for filehasher
"""


class FileHasherError(Exception):
    """Base class for all filehasher errors"""


class ConfigurationError(FileHasherError):
    """Invalid root path, thread count or store configuration.

    Raised before any reconciliation starts; always fatal for the run.
    """


class SchemaVersionMismatch(FileHasherError):
    """Persisted schema version differs from the version this code expects"""

    def __init__(self, found, expected):
        self.found = found
        self.expected = expected
        super().__init__(
            f"DB version check failed: database is v{found}, "
            f"supported version is v{expected}"
        )


class StoreError(FileHasherError):
    """A single record store operation failed"""


class RecordNotFound(StoreError):
    """Lookup against a path or record that is not in the store"""

    def __init__(self, key):
        self.key = key
        super().__init__(f"No record found for {key!r}")


class FileChangedError(OSError):
    """File size or mtime changed while it was being hashed"""
