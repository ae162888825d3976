import pytest
from pydantic import ValidationError

from settings import AppSettings, PollingSettings, load_yaml_config


class TestAppSettings:
    def test_defaults(self) -> None:
        settings = AppSettings()

        assert settings.backend.documents_path == "/api/moe/documents"
        assert settings.backend.analysis_path == "/api/analysis"
        assert settings.regulation.regulation_version == "2025-09-AMC-GM"
        assert settings.regulation.auto_detect is True
        assert settings.polling.status_interval_seconds == 5.0
        assert settings.polling.readiness_interval_seconds == 10.0
        assert settings.polling.page_size == 20
        assert settings.upload.allowed_extensions == [".pdf", ".docx"]

    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("COMPLIANCE_CLIENT_BACKEND__BASE_URL", "http://compliance.internal:9000")
        monkeypatch.setenv("COMPLIANCE_CLIENT_REGULATION__AUTO_DETECT", "false")

        settings = AppSettings()

        assert settings.backend.base_url == "http://compliance.internal:9000"
        assert settings.regulation.auto_detect is False

    def test_placeholder_ceiling_must_stay_below_hundred(self) -> None:
        with pytest.raises(ValidationError):
            PollingSettings(placeholder_ceiling=100)


class TestLoadYamlConfig:
    def test_reads_yaml(self, tmp_path) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("backend:\n  base_url: http://yaml.test\npolling:\n  page_size: 50\n", encoding="utf-8")

        data = load_yaml_config(config)
        settings = AppSettings(**data)

        assert settings.backend.base_url == "http://yaml.test"
        assert settings.polling.page_size == 50

    def test_empty_file(self, tmp_path) -> None:
        config = tmp_path / "empty.yaml"
        config.write_text("", encoding="utf-8")

        assert load_yaml_config(config) == {}

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_yaml_config(tmp_path / "absent.yaml")

    def test_bundled_config_loads(self) -> None:
        settings = AppSettings(**load_yaml_config())

        assert settings.backend.analysis_path == "/api/analysis"
