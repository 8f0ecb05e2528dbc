"""Configuration management with validation.

All tunables of the reconciler (poll cadence, timeouts, concurrency, test
resource prefix) are loaded from the environment and validated at load time
so that a bad value fails the run before any remote call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Poll cadence defaults (seconds)
DEFAULT_POLL_INITIAL_DELAY_SECONDS = 2.0
DEFAULT_POLL_MULTIPLIER = 2.0
DEFAULT_POLL_MAX_DELAY_SECONDS = 30.0
DEFAULT_POLL_TIMEOUT_SECONDS = 600.0
DEFAULT_POLL_JITTER = 0.2

MIN_POLL_TIMEOUT_SECONDS = 1.0
MAX_POLL_TIMEOUT_SECONDS = 7200.0

# Timeout for a single remote call (seconds)
DEFAULT_CALL_TIMEOUT_SECONDS = 120.0
MAX_CALL_TIMEOUT_SECONDS = 900.0

DEFAULT_MAX_CONCURRENCY = 8
MAX_CONCURRENCY_LIMIT = 64

DEFAULT_LOCATION = "westeurope"
DEFAULT_RESOURCE_PREFIX = "lcr-test"
MAX_RESOURCE_PREFIX_LENGTH = 24

# Resource Graph bounds
MAX_GRAPH_QUERY_RESULTS = 1000
MAX_GRAPH_QUERY_TIMEOUT_SECONDS = 60

# Manifest bounds
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_MANIFEST_RESOURCES = 200

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_PREFIX_PATTERN = r"^[a-z][a-z0-9-]*$"

LOG_FORMATS = ("json", "text")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    subscription_id: str
    location: str = DEFAULT_LOCATION

    # Credentials
    use_managed_identity: bool = False
    client_id: str | None = None

    # Poll cadence
    poll_initial_delay_seconds: float = DEFAULT_POLL_INITIAL_DELAY_SECONDS
    poll_multiplier: float = DEFAULT_POLL_MULTIPLIER
    poll_max_delay_seconds: float = DEFAULT_POLL_MAX_DELAY_SECONDS
    poll_timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS
    poll_jitter: float = DEFAULT_POLL_JITTER

    # Single remote call
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS

    # Concurrency across independent instances
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Prefix for names of disposable test resources (used by the sweeper)
    resource_prefix: str = DEFAULT_RESOURCE_PREFIX

    # Logging
    log_format: str = "json"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if self.poll_initial_delay_seconds <= 0:
            errors.append("LIFECYCLE_POLL_INITIAL_DELAY must be positive")
        if self.poll_multiplier < 1:
            errors.append("LIFECYCLE_POLL_MULTIPLIER must be at least 1")
        if self.poll_max_delay_seconds < self.poll_initial_delay_seconds:
            errors.append("LIFECYCLE_POLL_MAX_DELAY must not be below LIFECYCLE_POLL_INITIAL_DELAY")
        if not (MIN_POLL_TIMEOUT_SECONDS <= self.poll_timeout_seconds <= MAX_POLL_TIMEOUT_SECONDS):
            errors.append(
                f"LIFECYCLE_POLL_TIMEOUT must be between {MIN_POLL_TIMEOUT_SECONDS} "
                f"and {MAX_POLL_TIMEOUT_SECONDS} seconds"
            )
        if not (0 < self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"LIFECYCLE_CALL_TIMEOUT must be positive and at most {MAX_CALL_TIMEOUT_SECONDS} seconds"
            )
        if not (0 <= self.poll_jitter <= 1):
            errors.append("LIFECYCLE_POLL_JITTER must be between 0 and 1")

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"LIFECYCLE_MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if len(self.resource_prefix) > MAX_RESOURCE_PREFIX_LENGTH:
            errors.append(
                f"LIFECYCLE_RESOURCE_PREFIX exceeds maximum length of {MAX_RESOURCE_PREFIX_LENGTH}"
            )
        elif not re.match(VALID_PREFIX_PATTERN, self.resource_prefix):
            errors.append(f"LIFECYCLE_RESOURCE_PREFIX must match {VALID_PREFIX_PATTERN}")

        if self.log_format not in LOG_FORMATS:
            errors.append(f"LIFECYCLE_LOG_FORMAT must be one of {list(LOG_FORMATS)}")
        if self.log_level not in LOG_LEVELS:
            errors.append(f"LIFECYCLE_LOG_LEVEL must be one of {list(LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription (required)
            AZURE_LOCATION: Default location for created resources (default: westeurope)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            LIFECYCLE_USE_MANAGED_IDENTITY: Authenticate with managed identity (default: false)
            LIFECYCLE_POLL_INITIAL_DELAY: First poll delay in seconds (default: 2)
            LIFECYCLE_POLL_MULTIPLIER: Backoff multiplier (default: 2)
            LIFECYCLE_POLL_MAX_DELAY: Cap for a single poll delay (default: 30)
            LIFECYCLE_POLL_TIMEOUT: Maximum total wait per poll (default: 600)
            LIFECYCLE_POLL_JITTER: Jitter fraction added to each delay (default: 0.2)
            LIFECYCLE_CALL_TIMEOUT: Timeout for a single remote call (default: 120)
            LIFECYCLE_MAX_CONCURRENCY: Instances reconciled in parallel (default: 8)
            LIFECYCLE_RESOURCE_PREFIX: Name prefix of disposable test resources
            LIFECYCLE_LOG_FORMAT: json or text (default: json)
            LIFECYCLE_LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", DEFAULT_LOCATION),
            use_managed_identity=get_bool("LIFECYCLE_USE_MANAGED_IDENTITY", False),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            poll_initial_delay_seconds=get_float(
                "LIFECYCLE_POLL_INITIAL_DELAY", DEFAULT_POLL_INITIAL_DELAY_SECONDS
            ),
            poll_multiplier=get_float("LIFECYCLE_POLL_MULTIPLIER", DEFAULT_POLL_MULTIPLIER),
            poll_max_delay_seconds=get_float(
                "LIFECYCLE_POLL_MAX_DELAY", DEFAULT_POLL_MAX_DELAY_SECONDS
            ),
            poll_timeout_seconds=get_float("LIFECYCLE_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT_SECONDS),
            poll_jitter=get_float("LIFECYCLE_POLL_JITTER", DEFAULT_POLL_JITTER),
            call_timeout_seconds=get_float("LIFECYCLE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            max_concurrency=get_int("LIFECYCLE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            resource_prefix=os.environ.get("LIFECYCLE_RESOURCE_PREFIX", DEFAULT_RESOURCE_PREFIX),
            log_format=os.environ.get("LIFECYCLE_LOG_FORMAT", "json").lower(),
            log_level=os.environ.get("LIFECYCLE_LOG_LEVEL", "INFO").upper(),
        )
