"""
Payroll Recon - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "Payroll Recon"
    app_env: str = "development"
    debug: bool = False
    api_version: str = "v1"
    log_level: str = "INFO"
    
    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str = "sqlite+aiosqlite:///./payroll_recon.db"
    
    # ===========================================
    # CORS
    # ===========================================
    cors_origins: List[str] = ["*"]
    
    # ===========================================
    # PAYROLL DEFAULTS
    # ===========================================
    payroll_default_currency: str = "PKR"
    payroll_timezone: str = "Asia/Karachi"
    payroll_reconciliation_tolerance: Decimal = Decimal("1.00")
    # date.weekday() indexes, Monday is 0
    payroll_weekend_days: List[int] = [5, 6]
    payroll_tax_cutover_date: date = date(2024, 7, 1)
    
    # ===========================================
    # E-SIGNATURE (Dropbox Sign / HelloSign)
    # ===========================================
    hellosign_api_key: str = ""
    hellosign_client_id: str = ""
    hellosign_api_base: str = "https://api.hellosign.com/v3"
    hellosign_test_mode: bool = True
    hellosign_webhook_secret: str = ""
    
    @property
    def hellosign_missing_keys(self) -> List[str]:
        """Names of the provider credentials that are not configured."""
        missing = []
        if not self.hellosign_api_key:
            missing.append("HELLOSIGN_API_KEY")
        return missing
    
    # ===========================================
    # RECEIPT BRANDING
    # ===========================================
    company_name: str = "Payroll Recon"
    company_address: str = ""
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env.lower() == "development"
    
    @property
    def is_sqlite(self) -> bool:
        return self.database_url_async.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
