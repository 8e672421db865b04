"""Backup Service

Creates timestamped copies of documents before they are edited and restores
them when a session fails. Restores write to a temp file and then atomically
replace the original, so an interrupted restore never leaves a half-written
document in place.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional
import logging
import os
import shutil
import time

from .config import BackupSettings
from .errors import RetryExhaustedError
from .retry import FILE_POLICY, RetryPolicy, execute

logger = logging.getLogger(__name__)


class RestoreTimeoutError(Exception):
    """Restore deadline passed; not retried."""


class BackupService:
    def __init__(
        self,
        settings: Optional[BackupSettings] = None,
        policy: RetryPolicy = FILE_POLICY,
    ):
        self.settings = settings or BackupSettings()
        self.policy = policy

    def backup_dir_for(self, path: Path) -> Path:
        directory = Path(self.settings.backup_directory)
        if not directory.is_absolute():
            directory = path.parent / directory
        return directory

    def create_backup(self, path: Path | str) -> Path:
        """
        Copy ``path`` into the backup directory.

        Returns:
            Path of the backup copy, e.g. ``Backups/report_20251216_010530_123456.docx``

        Raises:
            FileNotFoundError: If ``path`` does not exist
            RetryExhaustedError: If the copy keeps failing
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Cannot back up missing file: {path}")

        backup_dir = self.backup_dir_for(path)
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = backup_dir / f"{path.stem}_{stamp}{path.suffix}"

        execute(
            lambda: shutil.copy2(path, backup_path),
            self.policy,
            description=f"backup of {path.name}",
        )
        logger.info("✓ Backup created: %s", backup_path)
        return backup_path

    def restore(
        self,
        original_path: Path | str,
        backup_path: Path | str,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Restore ``original_path`` from ``backup_path``.

        Retries transient file errors until ``timeout`` seconds have passed.
        Not cancellable: once started, the restore runs to completion or
        times out.

        Returns:
            True on success, False if the backup is missing or every attempt failed
        """
        original_path = Path(original_path)
        backup_path = Path(backup_path)
        if not backup_path.exists():
            logger.error("Backup file not found: %s", backup_path)
            return False

        deadline = time.monotonic() + timeout if timeout else None
        tmp_path = original_path.with_name(f".{original_path.stem}.restore.tmp")

        def _copy_and_replace() -> None:
            if deadline is not None and time.monotonic() > deadline:
                raise RestoreTimeoutError(f"Restore of {original_path.name} timed out")
            shutil.copy2(backup_path, tmp_path)
            os.replace(tmp_path, original_path)

        try:
            execute(_copy_and_replace, self.policy, description=f"restore of {original_path.name}")
        except (RetryExhaustedError, RestoreTimeoutError, OSError):
            logger.exception("Failed to restore %s from %s", original_path, backup_path)
            return False
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.info("✓ Restored %s from backup", original_path.name)
        return True

    def cleanup_old_backups(self, directory: Path | str, keep_last_n: Optional[int] = None) -> int:
        """
        Keep only the newest N backups of each document in ``directory``.

        Returns:
            Number of deleted backup files
        """
        directory = Path(directory)
        keep_last_n = self.settings.keep_last_n if keep_last_n is None else keep_last_n
        if not directory.exists():
            return 0

        logger.info("Cleaning up old backups in %s (keeping last %d)", directory, keep_last_n)

        groups: dict[str, List[Path]] = {}
        for f in directory.iterdir():
            if not f.is_file():
                continue
            # <stem>_<YYYYmmdd>_<HHMMSS>_<micro><suffix>
            parts = f.stem.rsplit("_", 3)
            if len(parts) != 4:
                continue
            groups.setdefault(parts[0] + f.suffix, []).append(f)

        deleted_count = 0
        for files in groups.values():
            # Timestamped names sort chronologically; copy2 keeps the source mtime.
            files.sort(key=lambda x: x.name, reverse=True)
            for old_file in files[keep_last_n:]:
                logger.debug("Deleting old backup: %s", old_file.name)
                old_file.unlink()
                deleted_count += 1

        if deleted_count > 0:
            logger.info("Cleaned up %d old backups", deleted_count)
        else:
            logger.info("No old backups to clean up")
        return deleted_count
