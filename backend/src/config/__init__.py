"""Configuration module for backend services."""

from src.config.vault import (
    TOKEN_REFRESH_BUFFER_SECONDS,
    DEFAULT_EXPIRES_IN_SECONDS,
    get_default_max_integrations,
    load_cipher_config,
)

__all__ = [
    "TOKEN_REFRESH_BUFFER_SECONDS",
    "DEFAULT_EXPIRES_IN_SECONDS",
    "get_default_max_integrations",
    "load_cipher_config",
]
