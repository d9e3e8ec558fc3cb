"""Tests for configuration file and environment helpers."""

import pytest

from chargesim.client.config import DriverConfig
from chargesim.exceptions import ConfigurationError
from chargesim.server.config import ControllerConfig
from chargesim.settings import build_config, env_overrides, load_yaml, normalize_keys, parse_weights


class TestLoadYaml:
    """Tests for reading configuration files."""

    def test_mapping(self, tmp_path):
        path = tmp_path / "sim.yaml"
        path.write_text("driver:\n  updates: 3\n  msisdns: ['85255610347']\n")

        assert load_yaml(path) == {"driver": {"updates": 3, "msisdns": ["85255610347"]}}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_yaml(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("driver: [unclosed\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_yaml(path)
        assert exc_info.value.details["path"] == str(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_yaml(tmp_path / "missing.yaml")


class TestEnvOverrides:
    """Tests for environment variable coercion."""

    def test_typed_values(self):
        environ = {
            "CHARGESIM_UPDATES": "5",
            "CHARGESIM_KEEPALIVE": "yes",
            "CHARGESIM_MSISDNS": "85255610001, 85255610002",
            "CHARGESIM_DPR_DELAY_MS": "250",
            "OTHER_UPDATES": "9",
        }

        overrides = env_overrides(DriverConfig, environ=environ)

        assert overrides == {
            "updates": 5,
            "keepalive": True,
            "msisdns": ["85255610001", "85255610002"],
            "dpr_delay_ms": 250,
        }

    def test_prefix_and_mapping_fields(self):
        environ = {
            "CHARGESIM_CONTROLLER_RESULT_CODES": "DIAMETER_SUCCESS=1,DIAMETER_TOO_BUSY=0.5",
            "CHARGESIM_CONTROLLER_CCR_COUNT_INTERVAL": "2.5",
        }

        overrides = env_overrides(ControllerConfig, "CHARGESIM_CONTROLLER_", environ)

        assert overrides["result_codes"] == {"DIAMETER_SUCCESS": 1.0, "DIAMETER_TOO_BUSY": 0.5}
        assert overrides["ccr_count_interval"] == 2.5

    @pytest.mark.parametrize("name,value", [
        ("CHARGESIM_UPDATES", "many"),
        ("CHARGESIM_KEEPALIVE", "perhaps"),
    ])
    def test_invalid_values(self, name, value):
        with pytest.raises(ConfigurationError):
            env_overrides(DriverConfig, environ={name: value})


class TestHelpers:

    def test_normalize_keys(self):
        assert normalize_keys({"update-interval-ms": 5, "updates": 1}) == {"update_interval_ms": 5, "updates": 1}

    def test_parse_weights(self):
        assert parse_weights(["DIAMETER_SUCCESS=3", " DIAMETER_TOO_BUSY = 1"]) == {
            "DIAMETER_SUCCESS": 3.0,
            "DIAMETER_TOO_BUSY": 1.0,
        }

    @pytest.mark.parametrize("item", ["DIAMETER_SUCCESS", "=1", "DIAMETER_SUCCESS=lots"])
    def test_parse_weights_rejects(self, item):
        with pytest.raises(ConfigurationError):
            parse_weights([item])

    def test_build_config_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_config(DriverConfig, {"updates": 1, "colour": "blue"})
        assert "colour" in exc_info.value.message

    def test_build_config_accepts_hyphens(self):
        config = build_config(ControllerConfig, {"rar-interval-ms": 500})
        assert config.rar_interval_ms == 500
