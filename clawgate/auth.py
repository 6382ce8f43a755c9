"""
Clawgate - Gateway Token
========================
Owns the shared secret the proxy injects into every request it forwards
to the backend. The backend is started with the same value, so the two
sides agree without the external client ever seeing it.

Resolution order:
    1. OPENCLAW_GATEWAY_TOKEN from the environment (never written to disk)
    2. <state_dir>/gateway.token written by an earlier run
    3. A freshly generated 256-bit hex token, saved to gateway.token (0600)

The token must stay stable for a given state volume: the backend keeps
its own copy, and a new value after restart would lock the proxy out.
"""

import os
import secrets

from clawgate.errors import TokenPersistenceError


# Number of random bytes in a generated token (hex encoded, 64 characters).
TOKEN_BYTES = 32


class TokenStore:
    """
    Resolves and caches the gateway token.

    Attributes:
        token_path:    Path of the persisted token file.
        env_token:     Explicit override, or None.
        persist_error: Set when a generated token could not be saved.
    """

    def __init__(self, token_path: str, env_token: str | None = None):
        """
        Args:
            token_path: Absolute path of gateway.token under the state directory.
            env_token:  Value of OPENCLAW_GATEWAY_TOKEN, if any.
        """
        self.token_path = token_path
        self.env_token = (env_token or "").strip() or None
        self.persist_error: TokenPersistenceError | None = None
        self._token: str | None = None
        self._source: str | None = None

    @property
    def degraded(self) -> bool:
        """True when the current token exists only in memory."""
        return self.persist_error is not None

    @property
    def source(self) -> str | None:
        """Where the current token came from: env, file or generated."""
        return self._source

    def get_or_create_token(self) -> str:
        """
        Return the gateway token, creating and persisting it on first use.

        The result is cached, so repeated calls return the same value for
        the life of the process.

        Returns:
            The gateway token.
        """
        if self._token:
            return self._token

        if self.env_token:
            self._token, self._source = self.env_token, "env"
            return self._token

        existing = self._read()
        if existing:
            self._token, self._source = existing, "file"
            return self._token

        token = secrets.token_hex(TOKEN_BYTES)
        try:
            self._write(token)
        except TokenPersistenceError as e:
            self.persist_error = e
            print(
                f"[WARN] {e}. Using an in-memory gateway token for this run; "
                "a restart will generate a different one and the backend may "
                "reject it.",
                flush=True,
            )
        self._token, self._source = token, "generated"
        return self._token

    # -- Internal helpers ------------------------------------------------------

    def _read(self) -> str | None:
        try:
            with open(self.token_path, "r", encoding="utf-8") as f:
                return f.read().strip() or None
        except FileNotFoundError:
            return None
        except OSError as e:
            print(f"[WARN] Cannot read {self.token_path}: {e}", flush=True)
            return None

    def _write(self, token: str) -> None:
        try:
            os.makedirs(os.path.dirname(self.token_path), exist_ok=True)
            fd = os.open(self.token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token)
            os.chmod(self.token_path, 0o600)
        except OSError as e:
            raise TokenPersistenceError(
                f"Cannot persist gateway token to {self.token_path}: {e}"
            ) from e


def bearer(token: str) -> str:
    """Authorization header value for a token."""
    return f"Bearer {token}"
