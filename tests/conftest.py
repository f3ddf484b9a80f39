"""
Pytest configuration and shared fixtures for closurekit tests.

This module contains:
- Global configuration isolation between tests
- Project configuration fixtures
- Shared config fixtures
"""

import pytest
import toml

from closurekit import CONFIG, ConfigModel
from closurekit.support.reconstruct import CODE_CACHE

# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def reset_config():
    """Every test starts from the default global configuration."""
    CONFIG.reset()
    CODE_CACHE.clear()
    yield
    CONFIG.reset()


# =============================================================================
# Project Configuration Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def load_pyproject_toml():
    """Load and parse the pyproject.toml file."""
    try:
        with open("pyproject.toml", "r") as f:
            data = toml.load(f)
        return data
    except toml.TomlDecodeError as e:
        pytest.fail(f"Failed to load pyproject.toml: {e}")


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def signing_key():
    return b"a secret signing key"


@pytest.fixture
def signed_config(signing_key: bytes) -> ConfigModel:
    """A standalone config with a signing key, leaving the global one untouched."""
    config = ConfigModel()
    config.set_signing_key(signing_key)
    return config
