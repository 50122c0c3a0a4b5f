"""
Database operations for filehasher
Handles all SQLite operations for file records, content blobs and settings
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from constants import CURRENT_DB_VERSION
from exceptions import ConfigurationError, RecordNotFound, SchemaVersionMismatch, StoreError

logger = logging.getLogger('filehasher.database')

SCHEMA = """
-- One row per tracked file, keyed by root-relative path
CREATE TABLE IF NOT EXISTS FilePaths (
    FilePathID INTEGER PRIMARY KEY AUTOINCREMENT,
    FilePath TEXT NOT NULL UNIQUE,
    LastWriteTimeUtc INTEGER NOT NULL,     -- st_mtime_ns of the file when last reconciled
    HashAlgorithm TEXT NOT NULL,
    FileHash TEXT NOT NULL                 -- lowercase hex digest
);

-- File content backups (backup mode only)
CREATE TABLE IF NOT EXISTS Blobs (
    BlobID INTEGER PRIMARY KEY AUTOINCREMENT,
    FK_FilePathID INTEGER NOT NULL UNIQUE,
    BlobData BLOB NOT NULL,
    FOREIGN KEY (FK_FilePathID) REFERENCES FilePaths(FilePathID)
);
CREATE INDEX IF NOT EXISTS idx_blobs_file_path_id ON Blobs(FK_FilePathID);

-- Schema version and revision counter
CREATE TABLE IF NOT EXISTS Settings (
    SettingKey TEXT PRIMARY KEY,
    SettingValue TEXT NOT NULL
);
"""

VERSION_KEY = 'DatabaseVersion'
REVISION_KEY = 'DatabaseRevision'


@dataclass(frozen=True)
class FileRecord:
    """Persisted metadata for one tracked file"""
    path: str
    last_write_time: int
    hash_algorithm: str
    file_hash: str
    record_id: Optional[int] = None

    @property
    def short_hash(self):
        return self.file_hash[:8]

    @classmethod
    def from_row(cls, row):
        return cls(
            path=row['FilePath'],
            last_write_time=row['LastWriteTimeUtc'],
            hash_algorithm=row['HashAlgorithm'],
            file_hash=row['FileHash'],
            record_id=row['FilePathID'],
        )


class FileHasherDatabase:
    """SQLite record store for filehasher.

    Every public operation opens its own connection and runs as a single
    transaction, so workers never share a connection and no transaction spans
    more than one call. A record and its blob are written by separate calls:
    a crash between the two leaves a record without a blob.

    Every mutating call also increments the DatabaseRevision setting inside
    the same transaction. The revision is a diagnostic change counter, not a
    transaction id.
    """

    # ==========================================================================
    # INITIALIZATION AND CONNECTION
    # ==========================================================================

    def __init__(self, db_path, timeout=30.0, debug_sql=False):
        """Open (or create) the store and check its schema version.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for another writer's lock
            debug_sql: If True, log all SQL queries at DEBUG level

        Raises:
            ConfigurationError: db_path is a directory
            SchemaVersionMismatch: Stored version differs from CURRENT_DB_VERSION
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.debug_sql = debug_sql

        if os.path.isdir(self.db_path):
            raise ConfigurationError(f"Database path is a directory, not a file: {self.db_path}")

        # A zero-byte file (e.g. touched by a previous failed start) counts as new
        if os.path.exists(self.db_path) and os.path.getsize(self.db_path) > 0:
            self._check_version()
        else:
            self._init_schema()

    @contextmanager
    def _connect(self):
        """Yield a fresh connection; commit on success, roll back on error"""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _execute(self, conn, query, params=()):
        """Execute a query with optional debug logging"""
        if self.debug_sql:
            logger.debug(f"SQL: {query}")
            if params:
                logger.debug(f"Params: {params}")
        return conn.execute(query, params)

    def _bump_revision(self, conn):
        self._execute(conn, """
            UPDATE Settings
            SET SettingValue = CAST(SettingValue AS INTEGER) + 1
            WHERE SettingKey = ?
        """, (REVISION_KEY,))

    def _init_schema(self):
        """Create a new database with the current schema"""
        logger.info(f"Creating new database at {self.db_path}")

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        with self._connect() as conn:
            conn.executescript(SCHEMA)
            self._execute(
                conn,
                "INSERT OR IGNORE INTO Settings (SettingKey, SettingValue) VALUES (?, ?)",
                (VERSION_KEY, str(CURRENT_DB_VERSION))
            )
            self._execute(
                conn,
                "INSERT OR IGNORE INTO Settings (SettingKey, SettingValue) VALUES (?, ?)",
                (REVISION_KEY, '0')
            )

    def _check_version(self):
        version = self.get_schema_version()
        if version != CURRENT_DB_VERSION:
            raise SchemaVersionMismatch(version, CURRENT_DB_VERSION)
        logger.debug(f"Database {self.db_path} is at schema v{version}")

    # ==========================================================================
    # SETTINGS
    # ==========================================================================

    def get_setting(self, key, default=None):
        with self._connect() as conn:
            row = self._execute(
                conn,
                "SELECT SettingValue FROM Settings WHERE SettingKey = ?",
                (key,)
            ).fetchone()
        return row['SettingValue'] if row else default

    def set_setting(self, key, value):
        with self._connect() as conn:
            self._execute(
                conn,
                "INSERT OR REPLACE INTO Settings (SettingKey, SettingValue) VALUES (?, ?)",
                (key, str(value))
            )

    def get_schema_version(self):
        """Return the stored schema version, 0 if the database has none"""
        with self._connect() as conn:
            tables = {row[0] for row in self._execute(
                conn, "SELECT name FROM sqlite_master WHERE type='table'"
            )}
            if 'Settings' not in tables:
                return 0
            row = self._execute(
                conn,
                "SELECT SettingValue FROM Settings WHERE SettingKey = ?",
                (VERSION_KEY,)
            ).fetchone()
        try:
            return int(row['SettingValue']) if row else 0
        except ValueError:
            return 0

    def get_revision(self):
        return int(self.get_setting(REVISION_KEY, '0'))

    # ==========================================================================
    # FILE RECORD OPERATIONS
    # ==========================================================================

    def list_all(self):
        """Return every record, sorted by path"""
        with self._connect() as conn:
            rows = self._execute(
                conn, "SELECT * FROM FilePaths ORDER BY FilePath ASC"
            ).fetchall()
        return [FileRecord.from_row(row) for row in rows]

    def get_record(self, path):
        with self._connect() as conn:
            row = self._execute(
                conn, "SELECT * FROM FilePaths WHERE FilePath = ?", (path,)
            ).fetchone()
        if not row:
            raise RecordNotFound(path)
        return FileRecord.from_row(row)

    def lookup_id(self, path):
        """Return the FilePathID for a path.

        Raises:
            RecordNotFound: No record with this exact path
        """
        with self._connect() as conn:
            row = self._execute(
                conn, "SELECT FilePathID FROM FilePaths WHERE FilePath = ?", (path,)
            ).fetchone()
        if not row:
            raise RecordNotFound(path)
        return row['FilePathID']

    def insert(self, record):
        """Insert a record and return a copy carrying its assigned id"""
        with self._connect() as conn:
            cursor = self._execute(conn, """
                INSERT INTO FilePaths (FilePath, LastWriteTimeUtc, HashAlgorithm, FileHash)
                VALUES (?, ?, ?, ?)
            """, (record.path, record.last_write_time, record.hash_algorithm, record.file_hash))
            record_id = cursor.lastrowid
            self._bump_revision(conn)
        return FileRecord(
            path=record.path,
            last_write_time=record.last_write_time,
            hash_algorithm=record.hash_algorithm,
            file_hash=record.file_hash,
            record_id=record_id,
        )

    def update(self, record):
        with self._connect() as conn:
            cursor = self._execute(conn, """
                UPDATE FilePaths
                SET FilePath = ?, LastWriteTimeUtc = ?, HashAlgorithm = ?, FileHash = ?
                WHERE FilePathID = ?
            """, (record.path, record.last_write_time, record.hash_algorithm,
                  record.file_hash, record.record_id))
            if cursor.rowcount == 0:
                raise RecordNotFound(record.path)
            self._bump_revision(conn)

    def update_last_write_time(self, record):
        """Store only the record's timestamp"""
        with self._connect() as conn:
            cursor = self._execute(
                conn,
                "UPDATE FilePaths SET LastWriteTimeUtc = ? WHERE FilePathID = ?",
                (record.last_write_time, record.record_id)
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(record.path)
            self._bump_revision(conn)

    def delete(self, record):
        with self._connect() as conn:
            self._execute(
                conn, "DELETE FROM FilePaths WHERE FilePathID = ?", (record.record_id,)
            )
            self._bump_revision(conn)

    def count(self):
        with self._connect() as conn:
            return self._execute(conn, "SELECT COUNT(*) FROM FilePaths").fetchone()[0]

    # ==========================================================================
    # BLOB OPERATIONS
    # ==========================================================================

    def insert_blob(self, record_id, data):
        with self._connect() as conn:
            self._execute(
                conn,
                "INSERT INTO Blobs (FK_FilePathID, BlobData) VALUES (?, ?)",
                (record_id, sqlite3.Binary(data))
            )
            self._bump_revision(conn)

    def update_blob(self, record_id, data):
        """Replace a record's blob, inserting it if the record has none yet.

        Records created in hash-only mode have no blob; their first backup
        goes through here.
        """
        with self._connect() as conn:
            cursor = self._execute(
                conn,
                "UPDATE Blobs SET BlobData = ? WHERE FK_FilePathID = ?",
                (sqlite3.Binary(data), record_id)
            )
            if cursor.rowcount == 0:
                self._execute(
                    conn,
                    "INSERT INTO Blobs (FK_FilePathID, BlobData) VALUES (?, ?)",
                    (record_id, sqlite3.Binary(data))
                )
            self._bump_revision(conn)

    def delete_blob(self, record_id):
        with self._connect() as conn:
            cursor = self._execute(
                conn, "DELETE FROM Blobs WHERE FK_FilePathID = ?", (record_id,)
            )
            if cursor.rowcount:
                self._bump_revision(conn)

    def read_blob(self, record_id):
        """Return the stored content for a record.

        Raises:
            RecordNotFound: The record has no blob
        """
        with self._connect() as conn:
            row = self._execute(
                conn, "SELECT BlobData FROM Blobs WHERE FK_FilePathID = ?", (record_id,)
            ).fetchone()
        if not row:
            raise RecordNotFound(f"blob of record {record_id}")
        return bytes(row['BlobData'])

    def has_blob(self, record_id):
        with self._connect() as conn:
            row = self._execute(
                conn, "SELECT 1 FROM Blobs WHERE FK_FilePathID = ?", (record_id,)
            ).fetchone()
        return row is not None

    def count_blobs(self):
        with self._connect() as conn:
            return self._execute(conn, "SELECT COUNT(*) FROM Blobs").fetchone()[0]

    # ==========================================================================
    # MAINTENANCE
    # ==========================================================================

    def compact(self):
        """Drop blobs whose record is gone, then vacuum to reclaim space"""
        with self._connect() as conn:
            cursor = self._execute(conn, """
                DELETE FROM Blobs
                WHERE FK_FilePathID NOT IN (SELECT FilePathID FROM FilePaths)
            """)
            orphans = cursor.rowcount
            if orphans:
                logger.info(f"Removed {orphans} orphaned blobs")
                self._bump_revision(conn)

        logger.info("Vacuuming database...")
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        try:
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise StoreError(f"Vacuum failed: {e}") from e
        finally:
            conn.close()
        logger.info("Vacuum complete")
        return orphans

    # ==========================================================================
    # STATISTICS AND REPORTING
    # ==========================================================================

    def get_statistics(self):
        """Get database statistics for status display.

        Returns:
            Dict with keys: total_records, total_blobs, blob_bytes,
            records_without_blob, schema_version, revision, database_bytes
        """
        with self._connect() as conn:
            stats = {
                'total_records': self._execute(
                    conn, "SELECT COUNT(*) FROM FilePaths"
                ).fetchone()[0],
                'total_blobs': self._execute(
                    conn, "SELECT COUNT(*) FROM Blobs"
                ).fetchone()[0],
                'blob_bytes': self._execute(
                    conn, "SELECT COALESCE(SUM(LENGTH(BlobData)), 0) FROM Blobs"
                ).fetchone()[0],
                'records_without_blob': self._execute(conn, """
                    SELECT COUNT(*) FROM FilePaths f
                    WHERE NOT EXISTS (SELECT 1 FROM Blobs b WHERE b.FK_FilePathID = f.FilePathID)
                """).fetchone()[0],
            }
        stats['schema_version'] = self.get_schema_version()
        stats['revision'] = self.get_revision()
        stats['database_bytes'] = os.path.getsize(self.db_path)
        return stats

    def get_algorithm_breakdown(self):
        """Return [(algorithm, record count)] sorted by count, descending"""
        with self._connect() as conn:
            rows = self._execute(conn, """
                SELECT HashAlgorithm, COUNT(*) AS n
                FROM FilePaths
                GROUP BY HashAlgorithm
                ORDER BY n DESC, HashAlgorithm ASC
            """).fetchall()
        return [(row['HashAlgorithm'], row['n']) for row in rows]

    def get_largest_blobs(self, limit=10):
        """Return [(path, blob size)] for the largest stored blobs"""
        with self._connect() as conn:
            rows = self._execute(conn, """
                SELECT f.FilePath, LENGTH(b.BlobData) AS size
                FROM Blobs b
                JOIN FilePaths f ON f.FilePathID = b.FK_FilePathID
                ORDER BY size DESC, f.FilePath ASC
                LIMIT ?
            """, (limit,)).fetchall()
        return [(row['FilePath'], row['size']) for row in rows]
