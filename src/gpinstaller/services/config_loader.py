"""Configuration loader for gpinstaller."""

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from gpinstaller.errors import ValidationError


class ConfigLoader:
    """Loads YAML or shell-style key-value configuration files."""

    SUPPORTED_KEYS = {
        "GPDB_COORDINATOR_HOST",
        "GPDB_STANDBY_HOST",
        "GPDB_SEGMENT_HOSTS",
        "GPDB_INSTALL_DIR",
        "GPDB_DATA_DIR",
        "GPDB_ADMIN_USER",
        "GPDB_DATABASE_NAME",
        "GPDB_COORDINATOR_PORT",
        "GPDB_PORT_BASE",
        "INSTALL_FILES_DIR",
        "SSH_USER",
        "SSH_PORT",
        "INSTALL_PXF",
        "INSTALL_MADLIB",
        "INSTALL_POSTGIS",
        "POOL_WIDTH",
        "COMMAND_TIMEOUT_SECONDS",
        "MAX_RETRIES",
        "RETRY_BACKOFF",
        "CHANNEL_IDLE_MINUTES",
        "STATE_FILE",
    }
    LIST_KEYS = {"GPDB_SEGMENT_HOSTS"}
    BOOL_KEYS = {"INSTALL_PXF", "INSTALL_MADLIB", "INSTALL_POSTGIS"}
    INT_KEYS = {
        "GPDB_COORDINATOR_PORT",
        "GPDB_PORT_BASE",
        "SSH_PORT",
        "POOL_WIDTH",
        "MAX_RETRIES",
        "CHANNEL_IDLE_MINUTES",
    }
    FLOAT_KEYS = {"COMMAND_TIMEOUT_SECONDS"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ValidationError(f"Config file not found: {config_path}")

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"Invalid config file '{config_path}': {exc}") from exc

        if path.suffix in (".yml", ".yaml"):
            parsed = self._parse_yaml(text, config_path)
        else:
            parsed = self._parse_shell(text, config_path)

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ValidationError(f"Unknown configuration keys: {unknown_list}")

        return {key: self._coerce(key, value) for key, value in parsed.items()}

    def _parse_yaml(self, text: str, config_path: str) -> Dict[str, Any]:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValidationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ValidationError("Config file must contain a YAML mapping at the root.")
        return {str(key).upper(): value for key, value in parsed.items()}

    def _parse_shell(self, text: str, config_path: str) -> Dict[str, Any]:
        parsed: Dict[str, Any] = {}
        for number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].strip()
            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or not key:
                raise ValidationError(f"Invalid line {number} in '{config_path}': {raw_line}")

            try:
                tokens = shlex.split(value, comments=True)
            except ValueError as exc:
                raise ValidationError(f"Invalid line {number} in '{config_path}': {exc}") from exc

            value = value.strip()
            if value.startswith("("):
                inner = value[1:value.rfind(")")] if ")" in value else None
                if inner is None:
                    raise ValidationError(f"Unterminated array on line {number} in '{config_path}'.")
                parsed[key] = shlex.split(inner)
            else:
                parsed[key] = tokens[0] if tokens else ""
        return parsed

    def _coerce(self, key: str, value: Any) -> Any:
        if key in self.LIST_KEYS:
            return self._as_list(key, value)
        if key in self.BOOL_KEYS:
            return self._as_bool(key, value)
        if key in self.INT_KEYS:
            return self._as_number(key, value, int)
        if key in self.FLOAT_KEYS:
            return self._as_number(key, value, float)
        if value is None:
            return None
        return str(value)

    @staticmethod
    def _as_list(key: str, value: Any) -> List[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return value.replace(",", " ").split()
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ValidationError(f"{key} must be a list of hostnames.")

    @staticmethod
    def _as_bool(key: str, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text == "true":
            return True
        if text in ("false", ""):
            return False
        raise ValidationError(f"{key} must be true or false, got '{value}'.")

    @staticmethod
    def _as_number(key: str, value: Any, kind):
        try:
            return kind(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{key} must be a number, got '{value}'.") from exc
