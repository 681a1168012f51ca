"""Runtime settings read from environment variables."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PROVIDER_API_URL = "https://gateway.bepaid.by"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class RecoverySettings:
    """Limits and provider credentials shared by reconciliation and recovery.

    Attributes:
        batch_size: Records per store write / provider round in bulk operations.
        safety_threshold: Bulk candidate count above which execution needs
            explicit operator confirmation.
        provider_max_attempts: Attempts per batch when the provider fails.
        provider_timeout: Provider HTTP timeout in seconds.
        plan_ttl_hours: Lifetime of a previewed plan token.
        sample_size: Number of sample rows kept per report bucket.
    """

    batch_size: int = 100
    safety_threshold: int = 1000
    provider_max_attempts: int = 3
    provider_timeout: float = 10.0
    plan_ttl_hours: int = 24
    sample_size: int = 20
    provider_api_url: str = DEFAULT_PROVIDER_API_URL
    provider_shop_id: Optional[str] = None
    provider_secret_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RecoverySettings":
        """Build settings from ``RECON_*`` and ``BEPAID_*`` environment variables."""
        settings = cls(
            batch_size=_int_env("RECON_BATCH_SIZE", cls.batch_size),
            safety_threshold=_int_env("RECON_SAFETY_THRESHOLD", cls.safety_threshold),
            provider_max_attempts=_int_env(
                "RECON_PROVIDER_MAX_ATTEMPTS", cls.provider_max_attempts
            ),
            provider_timeout=_float_env("RECON_PROVIDER_TIMEOUT", cls.provider_timeout),
            plan_ttl_hours=_int_env("RECON_PLAN_TTL_HOURS", cls.plan_ttl_hours),
            sample_size=_int_env("RECON_SAMPLE_SIZE", cls.sample_size),
            provider_api_url=os.getenv("BEPAID_API_URL", DEFAULT_PROVIDER_API_URL),
            provider_shop_id=os.getenv("BEPAID_SHOP_ID"),
            provider_secret_key=os.getenv("BEPAID_SECRET_KEY"),
        )
        if settings.batch_size <= 0:
            raise ValueError("RECON_BATCH_SIZE must be positive")
        if settings.safety_threshold <= 0:
            raise ValueError("RECON_SAFETY_THRESHOLD must be positive")
        if settings.provider_max_attempts <= 0:
            raise ValueError("RECON_PROVIDER_MAX_ATTEMPTS must be positive")
        return settings
