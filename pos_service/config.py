"""
config.py — Environment Configuration for the POS Payment Service

Loads the merchant wallet, signing key material, asset defaults, inventory
store coordinates and the outbound-call policies once at process start.
The resulting Settings instance is treated as immutable for the process lifetime.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables (or a `.env` file).

    Notes:
        - Without INVENTORY_URL the service still takes payments, but completed
          orders are never reconciled against stock.
        - PRIVATE_KEY may be given on a single line with literal `\\n` sequences.
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, frozen=True, extra="ignore")

    # Open Payments
    merchant_wallet_address_url: str = "https://ilp.interledger-test.dev/interpyme"
    key_id: str = "test-key-id"
    private_key: str = ""
    asset_code: str = "MXN"
    asset_scale: int = Field(default=2, ge=0)
    finish_url: str = "http://localhost:5174/complete"

    # Inventory (PostgREST / Supabase REST)
    inventory_url: Optional[str] = None
    inventory_api_key: Optional[str] = None
    inventory_table: str = "productos"
    inventory_id_column: str = "id"
    inventory_name_column: str = "nombre"
    inventory_stock_column: str = "cantidad"
    inventory_updated_column: str = "fecha_actualizacion"

    # Outbound call policy
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    wallet_retry_attempts: int = Field(default=2, ge=0)
    wallet_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # Server
    cors_origins: str = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:5174,http://127.0.0.1:5174"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: str = "pos_service.log"
    host: str = "0.0.0.0"
    port: int = 5001

    @property
    def private_key_pem(self) -> str:
        return self.private_key.replace("\\n", "\n")

    @property
    def inventory_configured(self) -> bool:
        return bool(self.inventory_url)

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Returns the process-wide settings instance."""
    return Settings()
