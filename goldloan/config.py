"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration. Business constants of the gold loan product (interest floors,
rebate policy, rate ladder, reminder schedule) live here so that every
calculator reads the same values.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class GoldLoanConfig(BaseSettings):
    """Gold loan core configuration"""

    # Storage configuration
    database_url: str = "sqlite:///goldloan.db"  # "memory://" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money
    currency_code: str = "INR"

    # Interest calculator
    min_interest_amount: int = 50
    min_rate_threshold: str = "14"  # Annual % above which the short minimum applies
    min_days_high_rate: int = 7
    min_days_low_rate: int = 15
    days_in_year: int = 365
    compounding_block_days: int = 30

    # Early repayment
    early_rebate_rate: str = "0.02"
    early_rebate_window_days: int = 30
    holidays: List[str] = ["2024-01-01", "2024-08-15", "2024-10-02", "2024-12-25"]

    # Origination
    min_principal: int = 100

    # Interest rate upgrade ladder, keyed by original annual rate
    rate_ladders: Dict[str, List[str]] = {"18": ["18", "24", "30", "36"]}
    top_tier_level: int = 3  # Reachable by administrative action only
    upgrade_block_months: int = 3
    first_upgrade_days: int = 90
    second_upgrade_days: int = 180
    first_upgrade_term_months: int = 3

    # Gold return
    gold_return_overdue_days: int = 30
    gold_return_reminder_days: Dict[str, int] = {
        "initial": 3,
        "followup": 7,
        "urgent": 15,
        "final": 30,
    }

    # Payment reminders (days before due date)
    payment_reminder_offsets: List[int] = [3, 1, 0]

    # Concurrency
    max_conflict_retries: int = 3

    class Config:
        env_prefix = "GOLDLOAN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = GoldLoanConfig()


def get_config() -> GoldLoanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> GoldLoanConfig:
    """Reload configuration from environment"""
    global config
    config = GoldLoanConfig()
    return config
