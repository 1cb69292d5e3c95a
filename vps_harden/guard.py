"""Transactional wrapper around directive mutations: backup, apply, validate, revert."""

import datetime
import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .directives import DirectiveStore, apply_directive
from .models import BackupRecord, Directive, Outcome, Status

logger = logging.getLogger(__name__)

Validator = Callable[[Path], Outcome]
Activator = Callable[[], Outcome]


def backup_path_for(path: Path, timestamp: str) -> Path:
    """``<original-path>.backup.<timestamp>``, suffixed with a counter if taken."""
    candidate = path.with_name(f"{path.name}.backup.{timestamp}")
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}.backup.{timestamp}.{counter}")
        counter += 1
    return candidate


def create_backup(path: Path) -> BackupRecord:
    """Copy ``path`` next to itself; raises OSError when the copy cannot be made."""
    timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    backup = backup_path_for(path, timestamp)
    shutil.copy2(path, backup)
    logger.info(f"Backed up {path} to {backup}")
    return BackupRecord(path, backup, timestamp)


def restore_backup(record: BackupRecord) -> None:
    shutil.copy2(record.backup_path, record.original_path)
    logger.warning(f"Restored {record.original_path} from {record.backup_path}")


class BackupGuard:
    """
    Runs a mutation pass over one config file as a unit.

    The live file is snapshotted before anything is written. If the validator
    rejects the result, or the activation step (usually a service restart)
    fails, the snapshot is copied back so the live file is always one the
    validator accepted or the original.
    """

    def __init__(self) -> None:
        self.backups: List[BackupRecord] = []

    def _revert(self, store: DirectiveStore, record: BackupRecord) -> Optional[str]:
        """Restore the snapshot; returns an error message if that failed."""
        try:
            restore_backup(record)
            store.reload()
        except OSError as e:
            logger.error(f"Failed to restore {record.original_path}: {e}")
            return str(e)
        return None

    def run(
        self,
        store: DirectiveStore,
        mutations: Iterable[Directive],
        validate: Validator,
        activate: Optional[Activator] = None,
    ) -> Outcome:
        path = store.path
        try:
            record = create_backup(path)
        except OSError as e:
            return Outcome.fatal(
                f"Failed to back up {path}: {e}",
                "Cannot proceed without a backup; no changes were made",
            )
        self.backups.append(record)
        manual_restore = f"cp {record.backup_path} {path}"

        for directive in mutations:
            outcome = apply_directive(store, directive.key, directive.value)
            if outcome.status is Status.FATAL:
                self._revert(store, record)
                return outcome

        validation = validate(path)
        if not validation.is_ok:
            logger.error(f"Validation of {path} failed: {validation.message}")
            error = self._revert(store, record)
            if error:
                return Outcome.fatal(
                    f"{path} failed validation and could not be restored: {error}",
                    f"Restore it manually: {manual_restore}",
                    data=record,
                )
            return Outcome.recoverable(
                f"{path} failed validation and was reverted: {validation.message}",
                f"Original configuration restored from {record.backup_path}",
                data=record,
            )

        if activate is not None:
            activation = activate()
            if not activation.is_ok:
                logger.error(f"Activation after editing {path} failed: {activation.message}")
                error = self._revert(store, record)
                if error is None and activate().is_ok:
                    hint = f"Original configuration restored from {record.backup_path}"
                else:
                    hint = f"Service did not come back; restore manually: {manual_restore}"
                return Outcome.recoverable(
                    f"{activation.message}; reverted {path}",
                    hint,
                    data=record,
                )

        return Outcome.ok(f"{path} updated and validated", data=record)
