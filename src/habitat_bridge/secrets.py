# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import json
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class SecretStore(Protocol):
    """
    Secret lookup capability supplied by the orchestration layer.
    """

    def get_secret(self, name: str) -> str | None:
        """
        Return the value for ``name`` or None when it is unknown.
        """
        ...


class EnvSecretStore:
    """
    Reads secrets directly from environment variables.
    Falls back to the ``HABITAT_`` prefixed name.
    """

    def __init__(self, prefix: str = "HABITAT_"):
        self.prefix = prefix

    def get_secret(self, name: str) -> str | None:
        val = os.getenv(name)
        if not val:
            val = os.getenv(f"{self.prefix}{name}")

        if not val:
            logger.debug(f"Secret {name} not found in environment.")

        return val or None


class JsonSecretStore:
    """Secrets kept as a flat JSON object in ``secrets.json``.

    The file maps variable names to values and is written owner-only (0600).
    A missing or corrupt file reads as empty.
    """

    FILENAME = "secrets.json"

    def __init__(self, directory: Path):
        """Initializes the store.

        Args:
            directory: Directory holding ``secrets.json``.
        """
        self.path = Path(directory) / self.FILENAME

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read secrets from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {self.path}: expected a JSON object")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def save(self, secrets: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(secrets, f, indent=2)
            f.write("\n")
        os.chmod(self.path, 0o600)

    def get_secret(self, name: str) -> str | None:
        return self.load().get(name)

    def set_secret(self, name: str, value: str) -> None:
        secrets = self.load()
        secrets[name] = value
        self.save(secrets)


class ChainedSecretStore:
    """Consults several stores in order and returns the first hit."""

    def __init__(self, *stores: SecretStore):
        self.stores = stores

    def get_secret(self, name: str) -> str | None:
        for store in self.stores:
            val = store.get_secret(name)
            if val:
                return val
        return None
