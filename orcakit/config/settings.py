"""Client settings and configuration management."""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

PROFILES = ("devnet", "mainnet")

DEFAULT_RPC_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
}


class ClientSettings(BaseSettings):
    """Client settings with environment variable support."""

    # Cluster and RPC
    cluster: Literal["devnet", "mainnet"] = Field(
        default="devnet", description="Cluster: devnet, mainnet"
    )
    rpc_url: str = Field(
        default=DEFAULT_RPC_URLS["devnet"], description="Solana RPC URL"
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed", description="Commitment level for reads and confirmation"
    )
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, description="HTTP request timeout"
    )
    rpc_max_retries: int = Field(
        default=3, ge=1, description="Attempts per RPC call on transient failures"
    )

    # Programs
    whirlpool_program_id: str = Field(
        default="whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
        description="Concentrated-liquidity (Whirlpool) program",
    )
    token_swap_program_id: str = Field(
        default="9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP",
        description="Orca token-swap (standard/stable) program",
    )
    token_program_id: str = Field(
        default="TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
        description="SPL Token program",
    )
    associated_token_program_id: str = Field(
        default="ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL",
        description="Associated token account program",
    )

    # Execution
    default_slippage_tolerance: float = Field(
        default=0.005, ge=0, lt=1, description="Default slippage as a fraction"
    )
    default_max_iterations: int = Field(
        default=3, ge=1, description="Default retry budget for operations"
    )
    retry_delay_seconds: float = Field(
        default=0.0, ge=0, description="Pause before re-quoting after a stale price"
    )
    preflight_simulate: bool = Field(
        default=True, description="Simulate transactions before submitting"
    )
    await_confirmation: bool = Field(
        default=True, description="Wait for signature confirmation after submit"
    )
    confirm_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Confirmation polling timeout"
    )
    confirm_poll_interval_seconds: float = Field(
        default=2.0, gt=0, description="Confirmation polling interval"
    )

    # Monitoring and analytics
    poll_interval_seconds: float = Field(
        default=10.0, gt=0, description="Price monitor polling interval"
    )
    monitor_error_backoff_seconds: float = Field(
        default=30.0, ge=0, description="Pause after a failed monitor fetch"
    )
    monitor_max_consecutive_errors: int = Field(
        default=5, ge=1, description="Monitor stops after this many failures in a row"
    )
    max_samples_per_pool: int = Field(
        default=1000, ge=1, description="Price history buffer size per pool"
    )
    health_window_hours: float = Field(
        default=24.0, gt=0, description="Pool health trailing window"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: Literal["json", "console"] = Field(
        default="console", description="Log renderer"
    )

    model_config = {
        "env_prefix": "ORCAKIT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


def load_settings(profile: str, yaml_path: str) -> ClientSettings:
    """Load settings from YAML file and environment variables.

    Args:
        profile: Cluster profile name (devnet, mainnet)
        yaml_path: Path to YAML configuration file

    Returns:
        ClientSettings instance with loaded configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValidationError: If configuration is invalid
        ValueError: If profile is invalid or the YAML cannot be parsed
    """
    if profile not in PROFILES:
        raise ValueError(
            f"Invalid profile: {profile}. Must be one of: {', '.join(PROFILES)}"
        )

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    try:
        with open(yaml_file, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError("Invalid YAML configuration: top level must be a mapping")

        # Profile sections override shared keys
        profile_overrides = yaml_config.pop("profiles", {}) or {}
        yaml_config.update(profile_overrides.get(profile, {}) or {})

        yaml_config["cluster"] = profile
        yaml_config.setdefault("rpc_url", DEFAULT_RPC_URLS[profile])

        logger.info("Loading configuration", profile=profile, yaml_path=yaml_path)

        settings = ClientSettings(**yaml_config)

        logger.info(
            "Configuration loaded successfully",
            profile=profile,
            rpc_url=settings.rpc_url[:50] + "..."
            if len(settings.rpc_url) > 50
            else settings.rpc_url,
        )

        return settings

    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML configuration", error=str(e))
        raise ValueError(f"Invalid YAML configuration: {e}") from e
    except ValidationError as e:
        logger.error("Configuration validation failed", error=str(e))
        raise
