"""Tests for circulation server configuration."""

import os
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from library_circulation.config import CirculationConfig, get_config, reset_config


class TestCirculationConfig:
    """Configuration defaults, overrides and validation."""

    def test_default_configuration(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = CirculationConfig()

        assert config.server_name == "library-circulation"
        assert config.transport == "stdio"
        assert config.database_path == (tmp_path / "data" / "circulation.db").absolute()

        # Circulation policy
        assert config.loan_period_days == 14
        assert config.renewal_period_days == 14
        assert config.max_renewals == 2
        assert config.max_active_loans == 5
        assert config.daily_fine == Decimal("1.00")

        assert config.conflict_retry_attempts == 3
        assert config.send_to_logfire is False

    def test_database_directory_is_created(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "loans.db"
        config = CirculationConfig(database_path=db_path)

        assert db_path.parent.is_dir()
        assert config.get_database_url() == f"sqlite:///{db_path}"

    def test_environment_variable_loading(self, tmp_path):
        env_vars = {
            "LIBRARY_CIRCULATION_SERVER_NAME": "branch-library",
            "LIBRARY_CIRCULATION_DATABASE_PATH": str(tmp_path / "env.db"),
            "LIBRARY_CIRCULATION_MAX_ACTIVE_LOANS": "3",
            "LIBRARY_CIRCULATION_DAILY_FINE": "0.25",
            "LIBRARY_CIRCULATION_LOG_LEVEL": "DEBUG",
        }

        with patch.dict(os.environ, env_vars):
            config = CirculationConfig()

        assert config.server_name == "branch-library"
        assert config.database_path == Path(tmp_path / "env.db")
        assert config.max_active_loans == 3
        assert config.daily_fine == Decimal("0.25")
        assert config.is_development is True

    @pytest.mark.parametrize("name", ["Library", "my library", "ab", "x" * 51])
    def test_invalid_server_names(self, name, tmp_path):
        with pytest.raises(ValidationError):
            CirculationConfig(server_name=name, database_path=tmp_path / "c.db")

    def test_renewal_cap_cannot_exceed_two(self, tmp_path):
        with pytest.raises(ValidationError):
            CirculationConfig(max_renewals=3, database_path=tmp_path / "c.db")

    def test_invalid_version_and_transport(self, tmp_path):
        with pytest.raises(ValidationError):
            CirculationConfig(server_version="v1", database_path=tmp_path / "c.db")
        with pytest.raises(ValidationError):
            CirculationConfig(transport="websocket", database_path=tmp_path / "c.db")

    def test_get_config_is_a_singleton(self, tmp_path):
        with patch.dict(os.environ, {"LIBRARY_CIRCULATION_DATABASE_PATH": str(tmp_path / "s.db")}):
            reset_config()
            try:
                assert get_config() is get_config()
                first = get_config()
                reset_config()
                assert get_config() is not first
            finally:
                reset_config()
