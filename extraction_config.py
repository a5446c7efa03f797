#!/usr/bin/env python3
"""
Configuration Management for the Caption Pipeline

Centralized settings for the RPC channel, DOM polling, upstream HTTP calls
and the delivery relay. Settings are loaded from environment variables
(optionally seeded from a .env file) with sensible defaults and validation.
"""

import os
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from dotenv import load_dotenv

from logging_setup import get_logger

logger = get_logger(__name__)

# Share of the RPC timeout a page-realm handler may use; the rest covers bus delivery
HANDLER_DEADLINE_RATIO = 0.9


@dataclass
class ExtractionConfig:
    """Configuration for one pipeline process (both realms)."""

    # Cross-realm RPC
    rpc_timeout_seconds: float = 10.0

    # DOM polling for the transcript panel
    dom_poll_interval_ms: int = 250
    dom_poll_max_attempts: int = 20

    # Extraction affordance insertion retry
    affordance_retry_interval_ms: int = 500
    affordance_retry_max_attempts: int = 30

    # Result acceptance
    sufficient_transcript_chars: int = 50
    transcript_locale: str = "en"

    # Delivery relay rebroadcast
    relay_interval_ms: int = 500
    relay_max_wait_seconds: float = 15.0

    # Upstream HTTP
    upstream_timeout_seconds: float = 4.0
    upstream_retry_attempts: int = 2

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> 'ExtractionConfig':
        """Load configuration from environment variables with validation."""
        load_dotenv()
        try:
            config = cls(
                rpc_timeout_seconds=cls._parse_float_env("RPC_TIMEOUT_SECONDS", 10.0, min_val=1.0, max_val=60.0),

                dom_poll_interval_ms=cls._parse_int_env("DOM_POLL_INTERVAL_MS", 250, min_val=50, max_val=5000),
                dom_poll_max_attempts=cls._parse_int_env("DOM_POLL_MAX_ATTEMPTS", 20, min_val=1, max_val=200),

                affordance_retry_interval_ms=cls._parse_int_env("AFFORDANCE_RETRY_INTERVAL_MS", 500, min_val=50, max_val=5000),
                affordance_retry_max_attempts=cls._parse_int_env("AFFORDANCE_RETRY_MAX_ATTEMPTS", 30, min_val=1, max_val=200),

                sufficient_transcript_chars=cls._parse_int_env("SUFFICIENT_TRANSCRIPT_CHARS", 50, min_val=0, max_val=10000),
                transcript_locale=os.getenv("TRANSCRIPT_LOCALE", "en").strip() or "en",

                relay_interval_ms=cls._parse_int_env("RELAY_INTERVAL_MS", 500, min_val=50, max_val=10000),
                relay_max_wait_seconds=cls._parse_float_env("RELAY_MAX_WAIT_SECONDS", 15.0, min_val=0.5, max_val=300.0),

                upstream_timeout_seconds=cls._parse_float_env("UPSTREAM_TIMEOUT_SECONDS", 4.0, min_val=1.0, max_val=60.0),
                upstream_retry_attempts=cls._parse_int_env("UPSTREAM_RETRY_ATTEMPTS", 2, min_val=1, max_val=5),

                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
                log_json=cls._parse_bool_env("LOG_JSON", True),
            )

            config._validate_config()

            return config

        except Exception as e:
            logger.error(f"Failed to load extraction configuration: {e}")
            logger.warning("Using default extraction configuration")
            return cls()

    @staticmethod
    def _parse_bool_env(env_var: str, default: bool) -> bool:
        """Parse boolean environment variable."""
        value = os.getenv(env_var, str(default).lower())
        return value.lower() in ("1", "true", "yes", "on")

    @staticmethod
    def _parse_int_env(env_var: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
        """Parse integer environment variable, clamping to [min_val, max_val]."""
        try:
            value = int(os.getenv(env_var, str(default)))
        except (ValueError, TypeError):
            logger.error(f"Invalid value for {env_var}: {os.getenv(env_var)}, using default {default}")
            return default

        if min_val is not None and value < min_val:
            logger.warning(f"{env_var}={value} is below minimum {min_val}, using {min_val}")
            return min_val

        if max_val is not None and value > max_val:
            logger.warning(f"{env_var}={value} is above maximum {max_val}, using {max_val}")
            return max_val

        return value

    @staticmethod
    def _parse_float_env(env_var: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
        """Parse float environment variable, clamping to [min_val, max_val]."""
        try:
            value = float(os.getenv(env_var, str(default)))
        except (ValueError, TypeError):
            logger.error(f"Invalid value for {env_var}: {os.getenv(env_var)}, using default {default}")
            return default

        if min_val is not None and value < min_val:
            logger.warning(f"{env_var}={value} is below minimum {min_val}, using {min_val}")
            return min_val

        if max_val is not None and value > max_val:
            logger.warning(f"{env_var}={value} is above maximum {max_val}, using {max_val}")
            return max_val

        return value

    @property
    def dom_poll_interval(self) -> float:
        return self.dom_poll_interval_ms / 1000.0

    @property
    def relay_interval(self) -> float:
        return self.relay_interval_ms / 1000.0

    @property
    def affordance_retry_interval(self) -> float:
        return self.affordance_retry_interval_ms / 1000.0

    @property
    def rpc_handler_deadline(self) -> float:
        """Seconds a page-realm handler may run before it is cancelled and answered with Timeout."""
        return self.rpc_timeout_seconds * HANDLER_DEADLINE_RATIO

    def _validate_config(self) -> None:
        """Log warnings for problematic combinations."""
        warnings = []

        dom_wait = self.dom_poll_interval * self.dom_poll_max_attempts
        if dom_wait >= self.rpc_timeout_seconds * 3:
            warnings.append(f"DOM poll window ({dom_wait:.1f}s) is far longer than the RPC timeout ({self.rpc_timeout_seconds}s)")

        # A strategy makes several upstream calls; the handler deadline cuts off whatever is left
        upstream_budget = self.upstream_timeout_seconds * self.upstream_retry_attempts
        if upstream_budget >= self.rpc_handler_deadline:
            warnings.append(
                f"Upstream budget per call ({upstream_budget:.0f}s) exceeds RPC timeout "
                f"less bus margin ({self.rpc_handler_deadline:.1f}s) - a single slow call will end the strategy"
            )

        if self.relay_interval >= self.relay_max_wait_seconds:
            warnings.append("RELAY_INTERVAL_MS is not shorter than RELAY_MAX_WAIT_SECONDS - relay will broadcast once")

        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for serialization."""
        return asdict(self)


# Global configuration instance
_extraction_config: Optional[ExtractionConfig] = None


def get_extraction_config() -> ExtractionConfig:
    """Get the global extraction configuration instance."""
    global _extraction_config
    if _extraction_config is None:
        _extraction_config = ExtractionConfig.from_env()
    return _extraction_config


def reload_extraction_config() -> ExtractionConfig:
    """Reload configuration from environment variables."""
    global _extraction_config
    _extraction_config = ExtractionConfig.from_env()
    return _extraction_config
