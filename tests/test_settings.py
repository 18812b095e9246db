"""
Тесты для настроек
"""
import pydantic
import pytest

from config.settings import Settings, create_env_example


class TestSettings:
    """Тесты для класса Settings"""

    def test_user_sets(self):
        settings = Settings(_env_file=None, ca_users="ca-001, ca-002,", admin_users="admin-001")

        assert settings.ca_users_set == {"ca-001", "ca-002"}
        assert settings.is_ca("ca-002") is True
        assert settings.is_admin("admin-001") is True
        assert settings.is_admin("ca-001") is False

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.default_share_token_validity_days == 7
        assert settings.max_share_token_validity_days == 90
        assert settings.max_share_token_access == 100
        assert settings.share_token_length == 32

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    @pytest.mark.parametrize("field", ["max_share_token_access", "default_share_token_validity_days"])
    def test_non_positive_limits_rejected(self, field):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_short_token_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, share_token_length=16)

    def test_env_variables(self, monkeypatch):
        monkeypatch.setenv("CA_USERS", "ca-777")
        monkeypatch.setenv("MAX_SHARE_TOKEN_ACCESS", "5")

        settings = Settings(_env_file=None)

        assert settings.is_ca("ca-777")
        assert settings.max_share_token_access == 5

    def test_create_directories(self, settings):
        settings.create_directories()

        assert settings.artifacts_path.is_dir()
        assert settings.log_file.parent.is_dir()

    def test_create_env_example(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        create_env_example()

        content = (tmp_path / ".env.example").read_text(encoding="utf-8")
        assert "DATABASE_URL=" in content
        assert "CA_USERS=" in content
