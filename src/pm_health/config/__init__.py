"""
Configuration Layer - Live configuration, remote reload and loading.

This module provides:
    - HealthConfig: Complete engine configuration (immutable snapshot)
    - ConfigStore: Owner of the live config, remote merge, inclusion policy
    - RemoteConfigFetcher: Downloads the remote configuration
    - load_config: Reads the JSON file and environment overrides

Remote Merge:
    - Only whitelisted keys are applied (REMOTE_KEYS)
    - The poll interval floor is applied when the store is created only
"""

from .settings import (
    METRIC_INTERVAL_S,
    BasicAuth,
    HealthConfig,
    SnapshotConfig,
    WebConfig,
    load_config,
    load_env_file,
)
from .store import REMOTE_KEYS, ConfigStore
from .remote import ConfigFetchError, RemoteConfigFetcher

__all__ = [
    # Settings
    "HealthConfig",
    "WebConfig",
    "SnapshotConfig",
    "BasicAuth",
    "METRIC_INTERVAL_S",
    "load_config",
    "load_env_file",
    # Store
    "ConfigStore",
    "REMOTE_KEYS",
    # Remote
    "RemoteConfigFetcher",
    "ConfigFetchError",
]
