"""
Policy configuration loading.

Reads a policy document from YAML or JSON, validates it with the pydantic
schemas and builds a PolicyRegistry. Any problem with the document is a
ConfigurationError.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as SchemaError

from jitguard.models.policy_models import PolicyDocument
from jitguard.services.policy_registry import PolicyRegistry
from jitguard.utils.errors import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "config", "default_policy.yaml"
)


class PolicyConfigLoader:
    """Load and validate policy configuration from a file or a mapping."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize policy configuration loader.

        Args:
            config_path: Path to policy configuration file. Falls back to
                JITGUARD_POLICY_CONFIG, then to the bundled default policy.
        """
        self.config_path = config_path or os.getenv(
            "JITGUARD_POLICY_CONFIG", DEFAULT_POLICY_PATH
        )

    def load(self) -> PolicyRegistry:
        """Load the policy file and build a registry.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        if not os.path.exists(self.config_path):
            raise ConfigurationError(f"Policy file not found: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                if self.config_path.endswith((".yaml", ".yml")):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to parse policy file {self.config_path}: {e}")

        logger.info(f"Loaded policy document from {self.config_path}")
        return self.load_dict(data or {})

    @staticmethod
    def load_dict(data: Dict[str, Any]) -> PolicyRegistry:
        """Validate an already-parsed document and build a registry."""
        if not isinstance(data, dict):
            raise ConfigurationError("Policy document must be a mapping")
        try:
            document = PolicyDocument.model_validate(data)
        except SchemaError as e:
            raise ConfigurationError(f"Invalid policy document: {_format_errors(e)}")

        return PolicyRegistry.build(
            privileged_roles=[r.to_model() for r in document.privileged_roles],
            duty_roles=[d.to_model() for d in document.duty_roles],
            separation_rules=[s.to_model() for s in document.separation_rules],
            version=document.version,
        )

    def __call__(self) -> PolicyRegistry:
        return self.load()


def _format_errors(error: SchemaError) -> str:
    parts: List[str] = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


def load_default_policy() -> PolicyRegistry:
    """Registry for the bundled reference deployment."""
    return PolicyConfigLoader(DEFAULT_POLICY_PATH).load()
