"""Local storage hardening helpers."""

from __future__ import annotations

import os
import stat
from pathlib import Path

from .errors import InsecurePermissionsError, KeyAlreadyExistsError

OWNER_ONLY_MODE = 0o600


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, OWNER_ONLY_MODE)


def file_mode(path: Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def require_owner_only(path: Path) -> None:
    """Raise unless ``path`` is exactly owner read/write (0600)."""
    mode = file_mode(path)
    if mode != OWNER_ONLY_MODE:
        raise InsecurePermissionsError(
            f"Insecure file permissions on {path}: expected 0600, got {mode:04o}"
        )


def write_private_file(path: Path, data: bytes, overwrite: bool = False) -> None:
    """Write ``data`` with 0600 permissions, re-asserting the mode after the write.

    Without ``overwrite`` the file is created with O_EXCL so a concurrent writer
    cannot slip in between the existence check and the write.
    """
    flags = os.O_WRONLY | os.O_CREAT
    flags |= os.O_TRUNC if overwrite else os.O_EXCL
    try:
        fd = os.open(path, flags, OWNER_ONLY_MODE)
    except FileExistsError:
        raise KeyAlreadyExistsError(
            f"Keypair file already exists at {path}. Pass overwrite=True to replace it."
        ) from None
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    # umask may have stripped or an existing file may carry looser bits
    os.chmod(path, OWNER_ONLY_MODE)
