"""
Configuration management for the storefront service.

Loads settings from the YAML config file, then applies environment overrides
(DATABASE_URL, REDIS_URL, STRIPE_SECRET_KEY, ...) so deployments only need a
.env file.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of the storefront package)."""
    return Path(__file__).resolve().parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class Settings:
    """Runtime settings for the storefront service."""

    env: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./storefront.db"

    redis_url: str = ""
    product_cache_ttl_seconds: int = 300

    # Pricing (money is always integer cents)
    currency: str = "USD"
    tax_rate: float = 0.08
    free_shipping_threshold_cents: int = 9900
    shipping_fee_cents: int = 999
    price_tolerance_cents: int = 1

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300

    performance_buffer_size: int = 1000
    metrics_window_size: int = 1000

    @property
    def is_development(self) -> bool:
        return self.env.lower() in ("development", "dev", "test", "")

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from YAML, then apply environment overrides."""
        path = config_path or DEFAULT_CONFIG_PATH
        data: Dict[str, Any] = {}
        if path.exists():
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}

        app_config = data.get("app", {})
        database_config = data.get("database", {})
        cache_config = data.get("cache", {})
        pricing_config = data.get("pricing", {})
        stripe_config = data.get("stripe", {})
        analytics_config = data.get("analytics", {})

        settings = cls(
            env=app_config.get("env", "development"),
            log_level=app_config.get("log_level", "INFO"),
            database_url=database_config.get("url", "sqlite:///./storefront.db"),
            redis_url=cache_config.get("url", "") or "",
            product_cache_ttl_seconds=cache_config.get("product_ttl_seconds", 300),
            currency=pricing_config.get("currency", "USD"),
            tax_rate=pricing_config.get("tax_rate", 0.08),
            free_shipping_threshold_cents=pricing_config.get("free_shipping_threshold_cents", 9900),
            shipping_fee_cents=pricing_config.get("shipping_fee_cents", 999),
            price_tolerance_cents=pricing_config.get("price_tolerance_cents", 1),
            stripe_secret_key=stripe_config.get("secret_key", "") or "",
            stripe_webhook_secret=stripe_config.get("webhook_secret", "") or "",
            webhook_tolerance_seconds=stripe_config.get("webhook_tolerance_seconds", 300),
            performance_buffer_size=analytics_config.get("buffer_size", 1000),
            metrics_window_size=analytics_config.get("metrics_window_size", 1000),
        )
        settings.apply_env()
        return settings

    def apply_env(self) -> None:
        """Override fields from environment variables when they are set."""
        overrides: Dict[str, tuple] = {
            "ENV": ("env", str),
            "LOG_LEVEL": ("log_level", str),
            "DATABASE_URL": ("database_url", str),
            "REDIS_URL": ("redis_url", str),
            "STRIPE_SECRET_KEY": ("stripe_secret_key", str),
            "STRIPE_WEBHOOK_SECRET": ("stripe_webhook_secret", str),
            "TAX_RATE": ("tax_rate", float),
            "FREE_SHIPPING_THRESHOLD_CENTS": ("free_shipping_threshold_cents", int),
            "SHIPPING_FEE_CENTS": ("shipping_fee_cents", int),
            "PRICE_TOLERANCE_CENTS": ("price_tolerance_cents", int),
            "WEBHOOK_TOLERANCE_SECONDS": ("webhook_tolerance_seconds", int),
            "PERFORMANCE_BUFFER_SIZE": ("performance_buffer_size", int),
        }
        for env_name, (attr, cast) in overrides.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            converter: Callable[[str], Any] = cast
            setattr(self, attr, converter(raw))


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings
