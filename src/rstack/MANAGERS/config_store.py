"""
Persisted key=value configuration, one env file per service group.
"""
import logging
import os
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)

FILE_MODE = 0o600


class ConfigStore:
    """
    Reads and writes env-style configuration files.

    Every call re-reads the file, so edits made by an operator between two
    calls are always seen.
    """
    def set(self, file: str, key: str, value: str) -> None:
        """
        Idempotent upsert: replaces the key in place if present, else appends.

        :param file: Env file path; created (mode 0600) if missing.
        :param key: Variable name.
        :param value: New value.
        """
        self._ensure_file(file)
        if self.get(file, key) == value:
            return
        quote_mode = "always" if _needs_quotes(value) else "never"
        set_key(file, key, value, quote_mode=quote_mode)
        os.chmod(file, FILE_MODE)
        logger.debug("Set %s in %s", key, file)

    def get(self, file: str, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Returns the value of ``key``, or ``default`` when the file or key is
        missing. A missing file is not an error.
        """
        return self.values(file).get(key, default)

    def values(self, file: str) -> Dict[str, str]:
        if not os.path.isfile(file):
            return {}
        return {k: (v if v is not None else "") for k, v in dotenv_values(file, interpolate=False).items()}

    def write(self, file: str, values: Mapping[str, str]) -> bool:
        """
        Writes a complete env file, replacing any previous content.

        :return: True if the content changed.
        """
        lines = []
        for key, value in values.items():
            value = str(value)
            if _needs_quotes(value):
                # same quoting as dotenv.set_key(quote_mode="always")
                value = "'" + value.replace("'", "\\'") + "'"
            lines.append(f"{key}={value}")
        content = "\n".join(lines) + ("\n" if lines else "")

        if os.path.isfile(file):
            with open(file, "r") as f:
                if f.read() == content:
                    return False
        self._ensure_file(file)
        with open(file, "w") as f:
            f.write(content)
        os.chmod(file, FILE_MODE)
        return True

    def exists(self, file: str) -> bool:
        return os.path.isfile(file)

    def _ensure_file(self, file: str) -> None:
        directory = os.path.dirname(file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(file):
            fd = os.open(file, os.O_WRONLY | os.O_CREAT, FILE_MODE)
            os.close(fd)


def _needs_quotes(value: str) -> bool:
    return any(c in value for c in " \t#'\"\\$") or value != value.strip()
