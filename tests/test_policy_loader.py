"""Tests for policy document loading."""

import json

import pytest
import yaml

from jitguard.services.policy_loader import (
    DEFAULT_POLICY_PATH,
    PolicyConfigLoader,
    load_default_policy,
)
from jitguard.utils.errors import ConfigurationError


MINIMAL_POLICY = {
    "version": "test-1",
    "privileged_roles": [
        {
            "id": "ops",
            "name": "Operations",
            "privilege_level": "elevated",
            "max_session_duration": 60,
            "allowed_time_windows": [
                {"start": "09:00", "end": "17:00", "timezone": "Europe/London", "days": [1, 2, 3]}
            ],
        }
    ],
    "duty_roles": [
        {"id": "deployer", "name": "Deployer", "category": "deployment"},
        {"id": "payer", "name": "Payer", "category": "payment_processing"},
    ],
    "separation_rules": [
        {
            "id": "deploy-pay",
            "name": "Deploy/Pay",
            "primary_duty": "deployment",
            "conflicting_duties": ["payment_processing"],
            "separation_level": "absolute",
            "enforcement_level": "fatal",
        }
    ],
}


class TestPolicyConfigLoader:
    """Loading YAML and JSON policy files."""

    def test_bundled_policy_loads(self):
        registry = load_default_policy()

        assert registry.version == "v1"
        assert len(registry.privileged_roles()) == 5
        assert len(registry.duty_roles()) == 5
        assert len(registry.separation_rules()) == 5

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.safe_dump(MINIMAL_POLICY))

        registry = PolicyConfigLoader(str(path)).load()

        assert registry.version == "test-1"
        window = registry.get_privileged_role("ops").allowed_time_windows[0]
        assert window.timezone == "Europe/London"
        assert window.days == (1, 2, 3)

    def test_json_file(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(MINIMAL_POLICY))

        loader = PolicyConfigLoader(str(path))

        assert loader().get_separation_rule("deploy-pay") is not None

    def test_env_var_overrides_default_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env-policy.yaml"
        path.write_text(yaml.safe_dump(MINIMAL_POLICY))
        monkeypatch.setenv("JITGUARD_POLICY_CONFIG", str(path))

        assert PolicyConfigLoader().config_path == str(path)

    def test_default_path_without_env(self, monkeypatch):
        monkeypatch.delenv("JITGUARD_POLICY_CONFIG", raising=False)
        assert PolicyConfigLoader().config_path == DEFAULT_POLICY_PATH

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            PolicyConfigLoader(str(tmp_path / "nope.yaml")).load()

    def test_unparsable_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("privileged_roles: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Failed to parse"):
            PolicyConfigLoader(str(path)).load()

    def test_schema_errors_are_reported(self):
        data = json.loads(json.dumps(MINIMAL_POLICY))
        data["privileged_roles"][0]["max_session_duration"] = 0
        data["privileged_roles"][0]["allowed_time_windows"][0]["start"] = "25:00"

        with pytest.raises(ConfigurationError) as exc_info:
            PolicyConfigLoader.load_dict(data)

        message = str(exc_info.value)
        assert "max_session_duration" in message
        assert "start" in message

    def test_unknown_enum_value(self):
        data = json.loads(json.dumps(MINIMAL_POLICY))
        data["duty_roles"][0]["category"] = "astrology"

        with pytest.raises(ConfigurationError, match="category"):
            PolicyConfigLoader.load_dict(data)

    def test_graph_errors_surface_from_registry(self):
        data = json.loads(json.dumps(MINIMAL_POLICY))
        data["separation_rules"][0]["allowed_exceptions"] = {"emergency_override": True}

        with pytest.raises(ConfigurationError, match="absolute"):
            PolicyConfigLoader.load_dict(data)

    def test_non_mapping_document(self):
        with pytest.raises(ConfigurationError):
            PolicyConfigLoader.load_dict(["not", "a", "mapping"])
