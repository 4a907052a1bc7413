"""Tests for environment configuration and the API key lookup."""

from pathlib import Path
from unittest.mock import patch

import pytest

from higher_logic_to_discourse.config import ALL_STAGES, MigrationConfig, get_api_key
from higher_logic_to_discourse.threads import OrphanPolicy
from higher_logic_to_discourse.utils import InvalidPassPathError

BASE_ENV = {
    "HL_ONS_DB": "community",
    "DISCOURSE_URL": "https://forum.example.com",
    "DISCOURSE_API_KEY": "key",
}


@pytest.mark.unit
class TestMigrationConfig:
    def test_defaults(self) -> None:
        config = MigrationConfig.from_env(BASE_ENV)

        assert config.host == "localhost"
        assert config.prefix == "dbo."
        assert config.attachments_dir == Path("/path/to/attachments")
        assert config.batch_size == 1000
        assert config.batch_retries == 0
        assert config.orphan_policy is OrphanPolicy.PROMOTE
        assert config.stages == ALL_STAGES
        assert config.state_db == "sqlite:///hl_import_state.db"
        assert config.discourse_api_username == "system"

    def test_overrides(self) -> None:
        env = BASE_ENV | {
            "HL_ONS_HOST": "sql01",
            "HL_ONS_USER": "reader",
            "HL_ONS_PW": "pw",
            "HL_ONS_PREFIX": "",
            "HL_ONS_BATCH_SIZE": "250",
            "HL_ONS_ORPHAN_POLICY": "SKIP",
            "HL_ONS_STAGES": "posts, users",
        }

        config = MigrationConfig.from_env(env)

        assert config.prefix == ""
        assert config.batch_size == 250
        assert config.orphan_policy is OrphanPolicy.SKIP
        assert config.stages == ("users", "posts")
        url = config.source_url()
        assert url.drivername == "mssql+pymssql"
        assert (url.host, url.database, url.username) == ("sql01", "community", "reader")

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("HL_ONS_BATCH_SIZE", "0"),
            ("HL_ONS_BATCH_SIZE", "many"),
            ("HL_ONS_BATCH_RETRIES", "-1"),
            ("HL_ONS_ORPHAN_POLICY", "delete"),
            ("HL_ONS_STAGES", "users,polls"),
        ],
    )
    def test_invalid_values(self, name: str, value: str) -> None:
        with pytest.raises(ValueError, match=name):
            MigrationConfig.from_env(BASE_ENV | {name: value})

    def test_missing_database(self) -> None:
        env = {k: v for k, v in BASE_ENV.items() if k != "HL_ONS_DB"}
        with pytest.raises(ValueError, match="HL_ONS_DB"):
            MigrationConfig.from_env(env)

    @patch("higher_logic_to_discourse.config.utils.get_pass_value")
    def test_missing_api_key(self, mock_pass) -> None:
        mock_pass.side_effect = InvalidPassPathError("not found")
        env = {k: v for k, v in BASE_ENV.items() if k != "DISCOURSE_API_KEY"}

        with pytest.raises(ValueError, match="API key"):
            MigrationConfig.from_env(env)


@pytest.mark.unit
class TestGetApiKey:
    @patch("higher_logic_to_discourse.config.utils.get_pass_value")
    def test_pass_path_first(self, mock_pass) -> None:
        mock_pass.return_value = "from-pass"

        assert get_api_key("discourse/admin", {"DISCOURSE_API_KEY": "env"}) == "from-pass"
        mock_pass.assert_called_once_with("discourse/admin")

    @patch("higher_logic_to_discourse.config.utils.get_pass_value")
    def test_env_var(self, mock_pass) -> None:
        assert get_api_key(None, {"DISCOURSE_API_KEY": "env"}) == "env"
        mock_pass.assert_not_called()

    @patch("higher_logic_to_discourse.config.utils.get_pass_value")
    def test_default_pass_path(self, mock_pass) -> None:
        mock_pass.return_value = "default"

        assert get_api_key(None, {}) == "default"
        mock_pass.assert_called_once_with("discourse/api_key")
