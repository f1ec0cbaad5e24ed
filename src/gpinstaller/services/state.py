"""Run state persistence. The file is diagnostic; resuming from it is not supported."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from gpinstaller.errors import InstallerError


class StateService:
    """Writes the serialized InstallationState atomically."""

    SCHEMA_VERSION = 1

    def __init__(self, state_file: str, logger):
        self.state_file = state_file
        self.logger = logger

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.state_file):
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise InstallerError(f"Could not read state file '{self.state_file}': {exc}") from exc

        if not isinstance(data, dict) or data.get("schema_version") != self.SCHEMA_VERSION:
            raise InstallerError(f"State file '{self.state_file}' has invalid format.")

        return data

    def save(self, state: Dict[str, Any]):
        directory = os.path.dirname(self.state_file) or "."
        os.makedirs(directory, exist_ok=True)
        payload = dict(state)
        payload["schema_version"] = self.SCHEMA_VERSION
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()

        fd, temp_path = tempfile.mkstemp(prefix="run-state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(payload, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.state_file)
        except OSError as exc:
            raise InstallerError(f"Could not write state file '{self.state_file}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    self.logger.debug("Could not remove temporary state file %s", temp_path)
