import logging
import os
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from trustguard.errors import ConfigWriteError, NoSnapshot
from trustguard.fileio import ensure_dir, write_file_atomic
from trustguard.models.snapshot import ConfigurationSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Last-known-good copies of tracked files, one per basename."""

    def __init__(self, lkg_dir: Path):
        self.lkg_dir = Path(lkg_dir)

    def location(self, path: Path) -> Path:
        return self.lkg_dir / Path(path).name

    def snapshot(self, path: Path) -> Optional[ConfigurationSnapshot]:
        """Copy ``path`` into the LKG area; returns None when there is nothing to copy."""
        path = Path(path)
        if not path.exists():
            logger.info("No existing %s to snapshot", path)
            return None

        content = path.read_bytes()
        mode = stat.S_IMODE(os.stat(path).st_mode)
        ensure_dir(self.lkg_dir, 0o700)
        target = self.location(path)
        write_file_atomic(target, content, mode=mode)
        logger.info("Snapshot of %s saved to %s", path, target)
        return ConfigurationSnapshot(
            target=path,
            location=target,
            content=content,
            taken_at=datetime.now(timezone.utc),
        )

    def get(self, path: Path) -> Optional[ConfigurationSnapshot]:
        location = self.location(path)
        if not location.exists():
            return None
        return ConfigurationSnapshot(
            target=Path(path),
            location=location,
            content=location.read_bytes(),
            taken_at=datetime.fromtimestamp(location.stat().st_mtime, timezone.utc),
        )

    def write_atomic(self, path: Path, content: Union[bytes, str], mode: int = 0o644) -> None:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            write_file_atomic(path, content, mode=mode, reference=path)
        except OSError as exc:
            raise ConfigWriteError(f"Could not write {path}: {exc}") from exc

    def rollback(self, path: Path) -> ConfigurationSnapshot:
        snapshot = self.get(path)
        if snapshot is None:
            raise NoSnapshot(f"No snapshot exists for {path}")
        path = Path(path)
        reference = path if path.exists() else snapshot.location
        write_file_atomic(path, snapshot.content, reference=reference)
        logger.warning("Restored %s from last-known-good snapshot", path)
        return snapshot
