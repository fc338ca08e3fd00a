"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Identity recorded on audit entries when no performer is supplied
    system_actor: str = "system"

    # Late fee policy applied when a repayment is recorded
    grace_period_days: int = 3
    late_fee_standard: str = "25.00"
    late_fee_severe: str = "50.00"
    late_fee_severe_after_days: int = 30
    
    # Late fee projection used by the due-now calculator
    projected_late_fee_daily_rate: str = "0.01"  # 1% of installment per day
    projected_late_fee_cap_rate: str = "0.10"    # capped at 10% of installment
    
    # Platform liquidity
    platform_opening_balance: str = "0.00"
    
    # Read API configuration
    default_page_size: int = 10
    max_page_size: int = 100
    
    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
