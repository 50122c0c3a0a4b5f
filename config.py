"""
Configuration loading for filehasher

Settings live in a TOML file, by default ~/.filehasher/config.toml. A
commented default file is written the first time filehasher runs without one.
Relative paths in the file are resolved against the file's own directory.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    import tomli as toml  # Python < 3.11 (for reading)
except ImportError:
    import tomllib as toml  # Python >= 3.11 (for reading)
import tomlkit  # For writing TOML with comments

from constants import DEFAULT_HASH_ALGORITHM, DEFAULT_THREADS, MAX_THREADS, MIN_THREADS
from exceptions import ConfigurationError
from hashing import normalize_algorithm, supported_algorithms

logger = logging.getLogger('filehasher.config')

CONFIG_ENV_VAR = 'FILEHASHER_CONFIG'
DEFAULT_CONFIG_DIR = Path('~/.filehasher')
DEFAULT_CONFIG_NAME = 'config.toml'

DEFAULT_CONFIG = {
    'database': {
        'path': 'filehasher.db',
        'timeout': 30.0,
    },
    'run': {
        'threads': DEFAULT_THREADS,
        'hash_algorithm': DEFAULT_HASH_ALGORITHM,
        'log_file': 'filehasher.log',
    },
}


@dataclass
class AppConfig:
    """Validated settings for one invocation"""
    db_path: Path
    db_timeout: float = 30.0
    threads: int = DEFAULT_THREADS
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    log_file: Optional[Path] = None
    config_path: Optional[Path] = None


def resolve_config_path(config_path=None):
    """--config argument, then $FILEHASHER_CONFIG, then the per-user default"""
    if config_path:
        return Path(config_path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_DIR.expanduser() / DEFAULT_CONFIG_NAME


def create_default_config(config_path):
    """Create a default TOML configuration file with comments"""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    doc = tomlkit.document()
    doc.add(tomlkit.comment("filehasher configuration file"))
    doc.add(tomlkit.comment(""))
    doc.add(tomlkit.comment("Relative paths are resolved against the directory of this file"))
    doc.add(tomlkit.nl())

    database = tomlkit.table()
    database.add(tomlkit.comment("SQLite file holding file records and content backups"))
    database["path"] = DEFAULT_CONFIG['database']['path']
    database.add(tomlkit.comment("Seconds a writer waits for another writer's lock"))
    database["timeout"] = DEFAULT_CONFIG['database']['timeout']
    doc["database"] = database

    run = tomlkit.table()
    run.add(tomlkit.comment(f"Worker threads per run ({MIN_THREADS}-{MAX_THREADS}), -threads overrides"))
    run["threads"] = DEFAULT_CONFIG['run']['threads']
    run.add(tomlkit.comment("Digest algorithm for new and modified files"))
    run.add(tomlkit.comment(f"One of: {', '.join(supported_algorithms())}"))
    run["hash_algorithm"] = DEFAULT_CONFIG['run']['hash_algorithm']
    run.add(tomlkit.comment("Run log, appended to on every run; --log-file overrides"))
    run["log_file"] = DEFAULT_CONFIG['run']['log_file']
    doc["run"] = run

    with open(config_path, 'w') as f:
        f.write(tomlkit.dumps(doc))

    logger.info(f"Created default config at {config_path}")


def _resolve_path(value, base_dir):
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def _section(data, name):
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    return section


def load_config(config_path=None):
    """Load and validate configuration.

    Args:
        config_path: Explicit config file path, or None to use the
            environment variable or the default location

    Returns:
        AppConfig

    Raises:
        ConfigurationError: Unparsable file or invalid setting
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        logger.info("No config found, creating default TOML config")
        create_default_config(path)

    logger.debug(f"Loading TOML config from {path}")
    try:
        with open(path, 'rb') as f:
            data = toml.load(f)
    except toml.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e

    base_dir = path.resolve().parent
    database = _section(data, 'database')
    run = _section(data, 'run')

    db_path = database.get('path', DEFAULT_CONFIG['database']['path'])
    if not isinstance(db_path, str) or not db_path.strip():
        raise ConfigurationError("[database] path must be a non-empty string")

    timeout = database.get('timeout', DEFAULT_CONFIG['database']['timeout'])
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigurationError(f"[database] timeout must be a positive number, got {timeout!r}")

    threads = run.get('threads', DEFAULT_CONFIG['run']['threads'])
    if isinstance(threads, bool) or not isinstance(threads, int) or not MIN_THREADS <= threads <= MAX_THREADS:
        raise ConfigurationError(
            f"[run] threads should be between {MIN_THREADS} and {MAX_THREADS}, got {threads!r}"
        )

    algorithm = normalize_algorithm(run.get('hash_algorithm', DEFAULT_CONFIG['run']['hash_algorithm']))
    if algorithm not in supported_algorithms():
        raise ConfigurationError(
            f"[run] hash_algorithm {algorithm!r} is not supported "
            f"(choose from {', '.join(supported_algorithms())})"
        )

    log_file = run.get('log_file', DEFAULT_CONFIG['run']['log_file'])
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigurationError("[run] log_file must be a string")

    return AppConfig(
        db_path=_resolve_path(db_path, base_dir),
        db_timeout=float(timeout),
        threads=threads,
        hash_algorithm=algorithm,
        log_file=_resolve_path(log_file, base_dir) if log_file else None,
        config_path=path,
    )
