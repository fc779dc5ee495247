import contextlib
import grp
import logging
import os
import pwd
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


def ensure_dir(path: Path, mode: int = 0o755) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)
    return path


def apply_ownership(path: Path, user: Optional[str], group: Optional[str] = None) -> None:
    """chown ``path`` to a service account; only meaningful when running as root."""
    if os.geteuid() != 0 or not user:
        return
    try:
        uid = pwd.getpwnam(user).pw_uid
        gid = grp.getgrnam(group).gr_gid if group else -1
    except KeyError:
        logger.warning("Account %s:%s not found, leaving %s owned by root", user, group, path)
        return
    os.chown(path, uid, gid)


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_file_atomic(
    path: Path,
    data: Union[bytes, str],
    mode: Optional[int] = 0o644,
    reference: Optional[Path] = None,
) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place.

    When ``reference`` exists its mode (and, as root, its owner) is copied onto
    the temp file before the rename; otherwise ``mode`` is applied.
    """
    if isinstance(data, str):
        data = data.encode()

    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())

        if reference is not None and Path(reference).exists():
            st = os.stat(reference)
            os.chmod(tmp_name, stat.S_IMODE(st.st_mode))
            if os.geteuid() == 0:
                os.chown(tmp_name, st.st_uid, st.st_gid)
        elif mode is not None:
            os.chmod(tmp_name, mode)

        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise

    _fsync_dir(path.parent)
