"""Tests for auth configuration loading."""

import json

from reins_auth.config import (
    CREDENTIAL_KEY_ENV,
    DATA_DIR_ENV,
    AuthConfig,
    get_credential_key,
    get_data_root,
    get_reins_config,
    load_auth_config,
)


class TestDataRoot:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "custom"))
        assert get_data_root() == tmp_path / "custom"

    def test_default_under_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_data_root() == tmp_path / ".reins"


class TestCredentialKey:
    def test_environment_wins(self, monkeypatch, tmp_path):
        dotenv = tmp_path / ".env"
        dotenv.write_text(f"{CREDENTIAL_KEY_ENV}=from-file\n")
        monkeypatch.setenv(CREDENTIAL_KEY_ENV, "from-env")

        assert get_credential_key(dotenv) == "from-env"

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        dotenv = tmp_path / ".env"
        dotenv.write_text(f'OTHER=1\n{CREDENTIAL_KEY_ENV}="from-file"\n')
        monkeypatch.delenv(CREDENTIAL_KEY_ENV, raising=False)

        assert get_credential_key(dotenv) == "from-file"

    def test_missing_everywhere(self, monkeypatch, tmp_path):
        monkeypatch.delenv(CREDENTIAL_KEY_ENV, raising=False)
        assert get_credential_key(tmp_path / "absent.env") is None


class TestConfigFile:
    def test_missing_file_is_empty(self, tmp_path):
        assert get_reins_config(tmp_path / "nope.json") == {}

    def test_invalid_json_is_empty(self, tmp_path):
        path = tmp_path / "configuration.json"
        path.write_text("{broken")
        assert get_reins_config(path) == {}

    def test_non_object_json_is_empty(self, monkeypatch, tmp_path):
        monkeypatch.setenv(CREDENTIAL_KEY_ENV, "k")
        path = tmp_path / "configuration.json"
        path.write_text(json.dumps([{"auth": {"callback_path": "/x"}}]))

        assert get_reins_config(path) == {}
        assert load_auth_config(path).callback_path == "/callback"

    def test_auth_section(self, monkeypatch, tmp_path):
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        monkeypatch.setenv(CREDENTIAL_KEY_ENV, "k")
        path = tmp_path / "configuration.json"
        path.write_text(
            json.dumps(
                {
                    "auth": {
                        "data_root": str(tmp_path / "data"),
                        "callback_path": "/oauth/callback",
                        "callback_timeout_seconds": 30,
                        "refresh_buffer_seconds": "ignored",
                        "unknown": True,
                    }
                }
            )
        )

        config = load_auth_config(path)

        assert config.data_root == tmp_path / "data"
        assert config.credential_file == tmp_path / "data" / "credentials" / "store.enc.json"
        assert config.callback_path == "/oauth/callback"
        assert config.callback_timeout_seconds == 30.0
        assert config.refresh_buffer_seconds == 300.0
        assert config.encryption_secret == "k"

    def test_env_data_root_beats_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "env"))
        path = tmp_path / "configuration.json"
        path.write_text(json.dumps({"auth": {"data_root": str(tmp_path / "file")}}))

        assert load_auth_config(path).data_root == tmp_path / "env"

    def test_secret_not_in_repr(self):
        config = AuthConfig(encryption_secret="super-secret")
        assert "super-secret" not in repr(config)
