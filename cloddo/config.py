"""Configuration and environment variables."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

# Global config directory
CONFIG_DIR = Path.home() / ".cloddo"
CONFIG_FILE = CONFIG_DIR / "config.yaml"
LOCAL_CONFIG_NAME = ".cloddo.yaml"

# Template for new config file
CONFIG_TEMPLATE = """# Cloddo Configuration

# Anthropic API key (or set CLODDO_API_KEY / ANTHROPIC_API_KEY)
api_key: ""
endpoint: "https://api.anthropic.com/v1"
model: "claude-3-5-sonnet-20241022"

# Output token budget per reply
max_tokens: 4096
# temperature: 0.7
system_prompt: ""

# Stream replies as they are generated
stream: true
request_timeout: 60.0
anthropic_version: "2023-06-01"
debug: false
"""


def ensure_config_dir() -> Path:
    """Create config directory if it doesn't exist."""
    if not CONFIG_DIR.exists():
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return CONFIG_DIR


def ensure_config_file() -> Path:
    """Create template config file if it doesn't exist."""
    ensure_config_dir()
    if not CONFIG_FILE.exists():
        CONFIG_FILE.write_text(CONFIG_TEMPLATE)
    return CONFIG_FILE


@dataclass
class Config:
    """Application configuration."""

    api_key: str = ""
    base_url: str = "https://api.anthropic.com/v1"
    model: str = "claude-3-5-sonnet-20241022"

    max_tokens: int = 4096
    temperature: Optional[float] = None
    system_prompt: str = ""

    stream: bool = True
    request_timeout: float = 60.0
    anthropic_version: str = "2023-06-01"
    debug: bool = False

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from file and environment variables.

        Config priority (later overrides earlier):
        1. ~/.cloddo/config.yaml (global)
        2. .cloddo.yaml (local project)
        3. Environment variables
        """
        config_data = {}

        # Ensure global config exists (creates template on first run)
        ensure_config_file()

        config_paths = [
            str(CONFIG_FILE),
            os.path.join(os.getcwd(), LOCAL_CONFIG_NAME),
        ]

        for path in config_paths:
            if os.path.exists(path):
                try:
                    with open(path, "r") as f:
                        file_data = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError):
                    continue  # Ignore unreadable config files
                if not isinstance(file_data, dict):
                    continue

                # Support both 'base_url' and 'endpoint'
                if "endpoint" in file_data and "base_url" not in file_data:
                    file_data["base_url"] = file_data["endpoint"]

                config_data.update(file_data)

        known = {f.name for f in fields(cls)}
        valid_fields = {k: v for k, v in config_data.items() if k in known}
        config = cls(**valid_fields)

        # Override with environment variables (highest priority)
        env_api_key = os.getenv("CLODDO_API_KEY", os.getenv("ANTHROPIC_API_KEY", ""))
        if env_api_key:
            config.api_key = env_api_key

        env_base_url = os.getenv("CLODDO_BASE_URL", os.getenv("CLODDO_ENDPOINT", ""))
        if env_base_url:
            config.base_url = env_base_url

        env_model = os.getenv("CLODDO_MODEL", "")
        if env_model:
            config.model = env_model

        env_max_tokens = os.getenv("CLODDO_MAX_TOKENS", "")
        if env_max_tokens.isdigit():
            config.max_tokens = int(env_max_tokens)

        if os.getenv("CLODDO_DEBUG"):
            config.debug = os.getenv("CLODDO_DEBUG", "").lower() == "true"

        return config

    def validate(self, require_key: bool = True) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []
        if require_key and not self.api_key:
            errors.append(
                f"API key not set. Edit {CONFIG_FILE} or set CLODDO_API_KEY env var"
            )
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            errors.append(f"max_tokens must be a positive integer, got {self.max_tokens!r}")
        timeout = self.request_timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append(f"request_timeout must be a number greater than zero, got {timeout!r}")
        return errors

    @staticmethod
    def get_config_path() -> Path:
        """Return path to global config file."""
        return CONFIG_FILE
