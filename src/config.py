"""
Configuration module for loading and validating environment variables.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

STORAGE_POLICIES = ("reset", "carry_forward")
CONTEXT_MODES = ("browser", "simulated")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """Preview sandbox configuration loaded from environment variables."""

    def __init__(self):
        # Load .env file from project root
        env_path = Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        self._invalid = []

        # Admission limits
        self.max_files = self._read_int("PREVIEW_MAX_FILES", 40)
        self.max_total_bytes = self._read_int("PREVIEW_MAX_TOTAL_BYTES", 400 * 1024)
        self.max_file_bytes = self._read_int("PREVIEW_MAX_FILE_BYTES", 256 * 1024)
        self.text_sample_chars = self._read_int("PREVIEW_TEXT_SAMPLE_CHARS", 5000)
        self.max_control_ratio = self._read_float("PREVIEW_MAX_CONTROL_RATIO", 0.05)

        # Timeouts (seconds)
        self.ready_timeout = self._read_float("PREVIEW_READY_TIMEOUT", 5.0)
        self.message_timeout = self._read_float("PREVIEW_MESSAGE_TIMEOUT", 3.0)

        # Preview lifecycle
        self.storage_policy = os.getenv("PREVIEW_STORAGE_POLICY", "reset").strip().lower()
        self.resource_base = os.getenv("PREVIEW_RESOURCE_BASE", "/_preview").rstrip("/")
        self.ttl_minutes = self._read_int("PREVIEW_TTL_MINUTES", 15)
        self.log_level = os.getenv("PREVIEW_LOG_LEVEL", "INFO").upper()

        # Preview server (serves documents and resources to the browser)
        self.context_mode = os.getenv("PREVIEW_CONTEXT_MODE", "browser").strip().lower()
        self.server_host = os.getenv("PREVIEW_SERVER_HOST", "127.0.0.1")
        self.server_port = self._read_int("PREVIEW_SERVER_PORT", 8765)
        self.public_url = (os.getenv("PREVIEW_PUBLIC_URL") or f"http://localhost:{self.server_port}").rstrip("/")

        # Validate settings
        self._validate()

    def _read_int(self, name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            self._invalid.append(f"{name}={raw!r} (expected an integer)")
            return default

    def _read_float(self, name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return float(raw)
        except ValueError:
            self._invalid.append(f"{name}={raw!r} (expected a number)")
            return default

    def _validate(self):
        """Validate that all settings are usable."""
        invalid = list(self._invalid)

        for name in ("max_files", "max_total_bytes", "max_file_bytes", "text_sample_chars", "ttl_minutes"):
            if getattr(self, name) <= 0:
                invalid.append(f"{name} must be positive")
        if not 0 <= self.max_control_ratio <= 1:
            invalid.append("PREVIEW_MAX_CONTROL_RATIO must be between 0 and 1")
        if self.ready_timeout <= 0 or self.message_timeout <= 0:
            invalid.append("PREVIEW_READY_TIMEOUT and PREVIEW_MESSAGE_TIMEOUT must be positive")
        if self.storage_policy not in STORAGE_POLICIES:
            invalid.append(
                f"PREVIEW_STORAGE_POLICY={self.storage_policy!r} (expected one of {', '.join(STORAGE_POLICIES)})"
            )
        if not self.resource_base:
            invalid.append("PREVIEW_RESOURCE_BASE must not be empty")
        if self.context_mode not in CONTEXT_MODES:
            invalid.append(
                f"PREVIEW_CONTEXT_MODE={self.context_mode!r} (expected one of {', '.join(CONTEXT_MODES)})"
            )
        if not 0 < self.server_port < 65536:
            invalid.append(f"PREVIEW_SERVER_PORT={self.server_port} is not a valid port")
        if not self.public_url.startswith(("http://", "https://")):
            invalid.append(f"PREVIEW_PUBLIC_URL={self.public_url!r} must be an http(s) URL")

        if invalid:
            raise ConfigError(
                f"Invalid preview configuration: {'; '.join(invalid)}\n"
                "Please fix these values in your environment or .env file."
            )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None
