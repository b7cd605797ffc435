"""Private on-disk state: the budget database and the audit secret."""

from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Optional

SQLITE_SIDECAR_SUFFIXES = ("-wal", "-shm")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def harden_sqlite_files(db_path: Path) -> None:
    """Restrict the database and any WAL/shared-memory files next to it to the owner."""
    for candidate in [db_path] + [Path(f"{db_path}{s}") for s in SQLITE_SIDECAR_SUFFIXES]:
        if candidate.exists():
            os.chmod(candidate, 0o600)


def load_or_create_secret(path: Path, env_var: Optional[str] = None, nbytes: int = 32) -> bytes:
    """
    Return a persistent secret.

    `env_var`, when set in the environment, wins over the file. Otherwise the
    file's contents are used, or a random hex secret is written to it.
    """
    if env_var:
        value = os.getenv(env_var)
        if value:
            return value.encode()
    ensure_private_dir(path.parent)
    if path.exists() and path.stat().st_size > 0:
        return path.read_bytes().strip()
    key = secrets.token_hex(nbytes).encode()
    path.write_bytes(key)
    ensure_private_file(path)
    return key
