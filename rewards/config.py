"""Reward program settings, loaded once per process."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RewardSettings(BaseSettings):
    """Reward program configuration.

    Values come from ``REWARDS_*`` environment variables or a ``.env`` file.
    The instance is frozen: allow-lists change only on restart.
    """

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Program
    enrolled_groups: list[str] = Field(default_factory=list)
    admin_ids: list[str] = Field(default_factory=list)
    referrer_voucher_count: int = Field(default=1, ge=0)
    new_member_voucher_count: int = Field(default=1, ge=0, le=1)
    record_unreferred_joins: bool = False

    # Storage
    database_url: Optional[str] = None  # e.g. sqlite+aiosqlite:///./rewards.db

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Admin listing
    admin_page_size: int = Field(default=30, gt=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # console | json

    def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.admin_ids


@lru_cache
def get_settings() -> RewardSettings:
    return RewardSettings()
