"""On-device key-value store for the Replicate API key.

Persistence model:
    One JSON object in `<CONFIG_DIR>/settings.json`. The API key lives under the
    fixed key `replicate_api_key`; other keys in the file are preserved.

Lifecycle:
    - `load()` is called at adapter startup.
    - `save(value)` is called whenever the key changes. Blank values are not
      written, so an empty input never erases a stored key by accident.
    - `clear()` removes the key on demand.

Side effects:
    Writes go through a temporary file and `os.replace`, and the resulting file
    is restricted to the current user (mode 0600).

Failure behavior:
    An unreadable or corrupt file is treated as empty on load and logged.
    Write failures propagate as `OSError`.
"""

import json
import logging
import os
import tempfile

from studio.image.provider_config import CONFIG_DIR, CREDENTIAL_KEY


logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"


class CredentialStore:
    """Persist a single credential string under a fixed key."""

    def __init__(self, config_dir=CONFIG_DIR, key=CREDENTIAL_KEY):
        self.path = os.path.join(config_dir, SETTINGS_FILENAME)
        self.key = key

    def _read_all(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception("Failed to read settings from %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data):
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".settings-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load(self):
        """Return the stored credential or `None`."""
        value = self._read_all().get(self.key)
        if not isinstance(value, str) or not value.strip():
            return None
        return value

    def save(self, value):
        """Store `value`; blank values are ignored. Returns True if written."""
        if not value or not value.strip():
            return False
        data = self._read_all()
        data[self.key] = value.strip()
        self._write_all(data)
        logger.info("API key saved to %s", self.path)
        return True

    def clear(self):
        """Erase the stored credential. Returns True if one was present."""
        data = self._read_all()
        if self.key not in data:
            return False
        del data[self.key]
        self._write_all(data)
        logger.info("API key removed from %s", self.path)
        return True


def mask(value):
    """Render a credential for display without revealing it."""
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
