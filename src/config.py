"""
config.py

Process-wide settings, read once from the environment, plus the loguru
sink setup shared by the API server and the test suite.
"""

from __future__ import annotations

import os
import sys
from datetime import timedelta
from typing import Optional

from loguru import logger


class Settings:
    """Runtime configuration.  Every value can be overridden with an APP_* variable."""

    def __init__(self):
        # Token verification
        self.secret_key = os.getenv("APP_SECRET_KEY", "dev-secret-change-in-production")
        self.token_algorithm = os.getenv("APP_TOKEN_ALGORITHM", "HS256")
        self.token_expire_minutes = int(os.getenv("APP_TOKEN_EXPIRE_MINUTES", "1440"))  # 24 hours

        # Notifications
        self.notification_retention_days = int(os.getenv("APP_NOTIFICATION_RETENTION_DAYS", "30"))
        self.notification_page_limit = int(os.getenv("APP_NOTIFICATION_PAGE_LIMIT", "50"))

        # Inventory
        self.low_stock_threshold = int(os.getenv("APP_LOW_STOCK_THRESHOLD", "5"))

        # Uploads
        self.max_upload_bytes = int(os.getenv("APP_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
        self.upload_root = os.getenv("APP_UPLOAD_ROOT", "uploads")

        # Server
        self.log_level = os.getenv("APP_LOG_LEVEL", "INFO").upper()
        self.host = os.getenv("APP_HOST", "0.0.0.0")
        self.port = int(os.getenv("APP_PORT", "8000"))
        self.admin_email = os.getenv("APP_ADMIN_EMAIL", "admin@example.com")

    @property
    def notification_retention(self) -> timedelta:
        return timedelta(days=self.notification_retention_days)

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.token_expire_minutes)


# Global settings instance
settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Replace loguru's default handler with a single stderr sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or settings.log_level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
        ),
        backtrace=False,
        diagnose=False,
    )
