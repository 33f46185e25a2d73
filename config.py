"""
config.py
=========
Runtime settings, read from the environment (and a local .env file if present).
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    database_url: str = "sqlite:///./coupons.db"
    log_level: str = "INFO"
    redemption_retries: int = 3           # Attempts on transient storage errors
    default_new_customer_days: int = 30   # "New customer" window when a coupon gives none
    default_timezone: str = "Asia/Dhaka"  # Stored on coupons, not used for comparisons

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            redemption_retries=int(os.getenv("REDEMPTION_RETRIES", cls.redemption_retries)),
            default_new_customer_days=int(
                os.getenv("DEFAULT_NEW_CUSTOMER_DAYS", cls.default_new_customer_days)
            ),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", cls.default_timezone),
        )


settings = Settings.from_env()
