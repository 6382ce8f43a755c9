"""
Tests for clawgate/auth.py (gateway token resolution)
"""

import os
import stat

from clawgate.auth import TokenStore, bearer
from clawgate.errors import TokenPersistenceError


class TestTokenPrecedence:

    def test_env_override_is_used_and_not_persisted(self, tmp_path):
        path = tmp_path / "gateway.token"
        store = TokenStore(str(path), env_token="from-env")

        assert store.get_or_create_token() == "from-env"
        assert store.source == "env"
        assert not path.exists()

    def test_env_override_beats_persisted_value(self, tmp_path):
        path = tmp_path / "gateway.token"
        path.write_text("from-file", encoding="utf-8")

        assert TokenStore(str(path), env_token="from-env").get_or_create_token() == "from-env"

    def test_persisted_value_is_used(self, tmp_path):
        path = tmp_path / "gateway.token"
        path.write_text("from-file\n", encoding="utf-8")
        store = TokenStore(str(path))

        assert store.get_or_create_token() == "from-file"
        assert store.source == "file"

    def test_blank_env_and_blank_file_generate(self, tmp_path):
        path = tmp_path / "gateway.token"
        path.write_text("   \n", encoding="utf-8")
        store = TokenStore(str(path), env_token="  ")

        token = store.get_or_create_token()

        assert store.source == "generated"
        assert len(token) == 64
        assert path.read_text(encoding="utf-8") == token


class TestGeneratedToken:

    def test_generated_token_is_persisted_privately(self, tmp_path):
        path = tmp_path / "state" / "gateway.token"
        token = TokenStore(str(path)).get_or_create_token()

        int(token, 16)  # hex
        assert len(token) == 64
        assert path.read_text(encoding="utf-8") == token
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_stable_across_restarts(self, tmp_path):
        path = str(tmp_path / "gateway.token")

        first = TokenStore(path).get_or_create_token()
        second = TokenStore(path).get_or_create_token()
        third = TokenStore(path).get_or_create_token()

        assert first == second == third

    def test_idempotent_within_process(self, tmp_path):
        path = tmp_path / "gateway.token"
        store = TokenStore(str(path))
        token = store.get_or_create_token()

        # Even if the file changes underneath, the process keeps its token
        path.write_text("changed", encoding="utf-8")
        assert store.get_or_create_token() == token

    def test_persistence_failure_is_degraded_not_fatal(self, tmp_path, capsys):
        # Given: the state "directory" is actually a file
        blocker = tmp_path / "state"
        blocker.write_text("x", encoding="utf-8")
        store = TokenStore(str(blocker / "gateway.token"))

        # When: a token is requested
        token = store.get_or_create_token()

        # Then: an in-memory token is still served, with a warning
        assert len(token) == 64
        assert store.degraded is True
        assert isinstance(store.persist_error, TokenPersistenceError)
        assert store.get_or_create_token() == token
        assert "[WARN]" in capsys.readouterr().out

    def test_tokens_differ_between_volumes(self, tmp_path):
        a = TokenStore(str(tmp_path / "a" / "gateway.token")).get_or_create_token()
        b = TokenStore(str(tmp_path / "b" / "gateway.token")).get_or_create_token()
        assert a != b


def test_bearer():
    assert bearer("abc") == "Bearer abc"
