#!/usr/bin/env python3
"""
ESXi USB Config and Secrets
Purpose: Load the optional YAML config and resolve the ESXi root password
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from usb_common import ConfigError

ROOT_PASSWORD_ENV_VAR = "ESXI_ROOT_PASSWORD"
SECRETS_FILE_NAME = "esxi-secrets.yaml"


class SecretsManager:
    """Manage secrets from multiple sources with priority order"""

    def __init__(self, secrets_file: Optional[Path] = None):
        self.secrets_file = secrets_file
        self._secrets_cache: Optional[Dict[str, Any]] = None

    def get_secret(
        self,
        key: str,
        config_value: Optional[str] = None,
        env_var: Optional[str] = None,
        prompt: Optional[Callable[[str], str]] = None,
    ) -> Optional[str]:
        """
        Get secret value with priority order:
        1. Environment variable (if env_var specified)
        2. Secrets file (esxi-secrets.yaml)
        3. Config file value (if config_value provided)
        4. Prompt user (if a prompt callable is given)

        Returns:
            Secret value or None if not found and no prompt was given
        """
        # Priority 1: Environment variable
        if env_var:
            env_value = os.environ.get(env_var)
            if env_value:
                return env_value

        # Priority 2: Secrets file
        secrets = self._load_secrets_file()
        if secrets and secrets.get(key):
            return str(secrets[key])

        # Priority 3: Config file value
        if config_value:
            return config_value

        # Priority 4: Prompt user
        if prompt:
            return prompt(f"Enter {key.replace('_', ' ')}: ")

        return None

    def _load_secrets_file(self) -> Optional[Dict[str, Any]]:
        """Load secrets file (cached)"""
        if self._secrets_cache is not None:
            return self._secrets_cache

        if not self.secrets_file or not self.secrets_file.exists():
            return None

        try:
            with open(self.secrets_file, "r", encoding="utf-8") as f:
                secrets = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load secrets file {self.secrets_file}: {e}") from e

        if not isinstance(secrets, dict):
            raise ConfigError(f"Secrets file {self.secrets_file} must contain a mapping")

        self._secrets_cache = secrets
        return self._secrets_cache

    def get_esxi_root_password(
        self,
        config_value: Optional[str] = None,
        prompt: Optional[Callable[[str], str]] = None,
    ) -> Optional[str]:
        return self.get_secret(
            key="esxi_root_password",
            config_value=config_value,
            env_var=ROOT_PASSWORD_ENV_VAR,
            prompt=prompt,
        )


def load_config(config_file: Path) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to load config: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")

    for section in ["network", "common"]:
        value = config.setdefault(section, {}) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"'{section}' section in config file must be a mapping")
        config[section] = value

    # Convert hosts list to dict for easier access
    hosts_dict = {}
    for host in config.get("hosts") or []:
        if "number" not in host:
            raise ConfigError(f"Host entry without 'number' in config file: {host}")
        hosts_dict[int(host["number"])] = host
    config["hosts_dict"] = hosts_dict

    return config


def secrets_file_for(config_file: Optional[Path]) -> Path:
    """Secrets live next to the config file, or in the working directory"""
    base_dir = config_file.parent if config_file else Path.cwd()
    return base_dir / SECRETS_FILE_NAME
