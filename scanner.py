"""
Filesystem scanning for filehasher

Paths are canonicalized to root-relative POSIX strings ('music/a.mp3') before
they are compared with stored records. Both snapshots of a run use this one
representation.
"""

import logging
import os
from pathlib import Path, PurePosixPath

logger = logging.getLogger('filehasher.scanner')


def parse_extensions(extension_args):
    """Normalize extension arguments into a set of lowercase suffixes.

    Accepts comma separated strings with or without leading dots:
    ['txt,.MP3', ' jpg '] -> {'.txt', '.mp3', '.jpg'}
    """
    if isinstance(extension_args, str):
        extension_args = [extension_args]

    extensions = set()
    for item in extension_args:
        for part in item.split(','):
            ext = part.strip().lower()
            if not ext:
                continue
            if not ext.startswith('.'):
                ext = f".{ext}"
            extensions.add(ext)
    return frozenset(extensions)


class FileScanner:
    """Enumerates accepted files under a root directory"""

    def __init__(self, root, extensions, exclude=()):
        self.root = Path(root).resolve()
        self.extensions = parse_extensions(extensions)
        self.exclude = {Path(p).resolve() for p in exclude}

    def canonical(self, file_path):
        """Root-relative POSIX form of an absolute path under root"""
        return PurePosixPath(Path(file_path).relative_to(self.root)).as_posix()

    def absolute(self, rel_path):
        return self.root.joinpath(*PurePosixPath(rel_path).parts)

    def is_accepted(self, file_path):
        return Path(file_path).suffix.lower() in self.extensions

    def is_excluded(self, file_path):
        """True for an excluded path or one of its rotated copies (run.log.1)"""
        file_path = Path(file_path)
        if file_path in self.exclude:
            return True
        stem, _, suffix = file_path.name.rpartition('.')
        return suffix.isdigit() and file_path.with_name(stem) in self.exclude

    def iter_files(self):
        """Yield every regular file under root without following symlinks"""
        if not self.root.is_dir():
            raise FileNotFoundError(f"Directory '{self.root}' doesn't exist")

        def on_error(e):
            logger.warning(f"Skipping directory {e.filename}: {e.strerror}")

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_error, followlinks=False):
            dirnames.sort()
            for name in filenames:
                file_path = Path(dirpath) / name
                if file_path.is_symlink() or not file_path.is_file():
                    continue
                if self.is_excluded(file_path):
                    logger.debug(f"Excluded from scan: {file_path}")
                    continue
                yield file_path

    def scan(self):
        """Return the sorted root-relative paths of all accepted files.

        Raises:
            FileNotFoundError: root does not exist
        """
        paths = sorted(
            self.canonical(p) for p in self.iter_files() if self.is_accepted(p)
        )
        logger.debug(f"Scanned {len(paths)} files under {self.root}")
        return paths

    def find_unrelated_files(self):
        """Return absolute paths of files whose extension is not accepted"""
        return sorted(p for p in self.iter_files() if not self.is_accepted(p))


def clean_unrelated_files(scanner, confirmer):
    """Delete files under the scanner's root whose extension is not accepted.

    Returns:
        Number of files deleted
    """
    unrelated = scanner.find_unrelated_files()
    if not unrelated:
        logger.info("Folder cleanup not required")
        return 0

    deleted = 0
    for file_path in unrelated:
        if not confirmer.confirm(f"'{file_path}' is not a tracked file type. Delete? (y/n):"):
            continue
        try:
            file_path.unlink()
        except OSError as e:
            logger.error(f"EXCEPTION Could not delete '{file_path}': {e}")
            continue
        deleted += 1
        logger.info(f"File '{file_path}' deleted")

    logger.info(f"Folder cleanup deleted files: {deleted}")
    return deleted
