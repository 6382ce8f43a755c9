"""
Clawgate - Configuration State
==============================
Decides whether the backend has been provisioned.

The state is never stored: it is derived from the existence of the
backend's configuration file, written by the onboarding flow. Every call
checks the filesystem again so a file written moments earlier is seen
immediately.
"""

import os
from enum import Enum

from clawgate.errors import ConfigurationReadError


class ConfigurationState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"


class ConfigurationStore:
    """
    Read-only view of the configuration marker file.

    Attributes:
        config_path: File whose presence means the backend is configured.
    """

    def __init__(self, config_path: str):
        self.config_path = config_path

    def is_configured(self) -> bool:
        """
        Check for the configuration file.

        Any filesystem error other than "not found" is reported and
        treated as unconfigured, so traffic is never let through to a
        backend that may not exist.

        Returns:
            True if the configuration file exists.
        """
        try:
            return self._check()
        except ConfigurationReadError as e:
            print(f"[WARN] {e}; treating gateway as unconfigured", flush=True)
            return False

    @property
    def state(self) -> ConfigurationState:
        if self.is_configured():
            return ConfigurationState.CONFIGURED
        return ConfigurationState.UNCONFIGURED

    def _check(self) -> bool:
        try:
            os.stat(self.config_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ConfigurationReadError(
                f"Cannot read configuration at {self.config_path}: {e}"
            ) from e
        return True
