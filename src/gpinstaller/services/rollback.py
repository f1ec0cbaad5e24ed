"""Backups taken before destructive steps, and run teardown."""

import os
import threading
from datetime import datetime, timezone
from typing import Collection, List, Optional, Tuple

from gpinstaller.constants import BACKUP_SUFFIX
from gpinstaller.errors import InstallerError
from gpinstaller.models import Backup, InstallSettings
from gpinstaller.services.shell import privileged, q


class RollbackManager:
    """Tracks outstanding backups and owns the end-of-run cleanup.

    ``cleanup_run`` may be reached from both the failure path and the
    interrupt path; only the first call does any work.
    """

    def __init__(self, executor, connections, credentials, settings: InstallSettings, logger):
        self.executor = executor
        self.connections = connections
        self.credentials = credentials
        self.settings = settings
        self.logger = logger
        self._backups: List[Backup] = []
        self._temp_files: List[Tuple[str, str]] = []
        self._local_files: List[str] = []
        self._lock = threading.Lock()
        self._cleaned = False

    @property
    def backups(self) -> List[Backup]:
        with self._lock:
            return list(self._backups)

    def snapshot(self, host: str, target: str) -> Optional[Backup]:
        if self.settings.dry_run:
            self.logger.debug("[dry-run] Skipping backup of %s:%s", host, target)
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        location = f"{target.rstrip('/')}.{BACKUP_SUFFIX}-{stamp}"
        script = (
            f"if [ -e {q(target)} ]; then cp -a {q(target)} {q(location)} && echo present; "
            "else echo absent; fi"
        )
        result = self.executor.run_on(host, privileged(self.settings, script))
        existed = result.stdout.strip().endswith("present")
        backup = Backup(
            host=host,
            target_path=target,
            snapshot_location=location if existed else None,
            created_at=datetime.now(timezone.utc).isoformat(),
            existed=existed,
        )
        with self._lock:
            self._backups.append(backup)
        self.logger.debug("Backup of %s:%s -> %s", host, target, backup.snapshot_location or "(absent)")
        return backup

    def restore(self, backup: Backup):
        target = q(backup.target_path)
        if backup.existed and backup.snapshot_location:
            location = q(backup.snapshot_location)
            script = f"rm -rf {target} && cp -a {location} {target} && rm -rf {location}"
        else:
            script = f"rm -rf {target}"
        self.executor.run_on(backup.host, privileged(self.settings, script))
        self.logger.info("Restored %s on %s", backup.target_path, backup.host)

    def discard(self, backup: Backup):
        if backup.existed and backup.snapshot_location:
            self.executor.run_on(backup.host, privileged(self.settings, f"rm -rf {q(backup.snapshot_location)}"))

    def restore_all(self, skip_hosts: Collection[str] = ()) -> List[InstallerError]:
        with self._lock:
            pending = list(reversed(self._backups))
            self._backups.clear()

        errors = []
        for backup in pending:
            if backup.host in skip_hosts:
                self.logger.error(
                    "Not restoring %s on %s, a step is still running there. Backup left at %s.",
                    backup.target_path,
                    backup.host,
                    backup.snapshot_location or "(none)",
                )
                continue
            try:
                self.restore(backup)
            except InstallerError as exc:
                self.logger.error("Could not restore %s on %s: %s", backup.target_path, backup.host, exc)
                errors.append(exc)
        return errors

    def discard_all(self):
        with self._lock:
            pending = list(self._backups)
            self._backups.clear()

        for backup in pending:
            try:
                self.discard(backup)
            except InstallerError as exc:
                self.logger.warning("Could not remove backup %s on %s: %s", backup.snapshot_location, backup.host, exc)

    def register_temp_file(self, host: str, path: str):
        with self._lock:
            self._temp_files.append((host, path))

    def register_local_file(self, path: str):
        with self._lock:
            self._local_files.append(path)

    def cleanup_run(self, skip_hosts: Collection[str] = ()):
        with self._lock:
            if self._cleaned:
                return
            self._cleaned = True
            temp_files = list(reversed(self._temp_files))
            local_files = list(self._local_files)

        try:
            for host, path in temp_files:
                if host in skip_hosts:
                    self.logger.warning("Leaving temporary file %s on %s.", path, host)
                    continue
                try:
                    self.executor.run_on(host, privileged(self.settings, f"rm -f {q(path)}"), check=False)
                except InstallerError as exc:
                    self.logger.warning("Could not remove temporary file %s on %s: %s", path, host, exc)
            for path in local_files:
                try:
                    if os.path.exists(path):
                        os.remove(path)
                except OSError as exc:
                    self.logger.warning("Could not remove %s: %s", path, exc)
        finally:
            try:
                self.connections.release_all(force=bool(skip_hosts))
            finally:
                self.credentials.zero()
