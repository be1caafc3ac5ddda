"""
Configuración centralizada del indexador.
Lee todas las variables de entorno usando pydantic-settings.
NUNCA hardcodear valores sensibles aquí.
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Base de datos -------------------------------------------------------
    # URL asíncrona (asyncpg) usada por los servicios y el scheduler
    DATABASE_URL: str

    # URL síncrona (psycopg2) usada exclusivamente por Alembic para migraciones
    DATABASE_SYNC_URL: str

    # --- Seguridad -----------------------------------------------------------
    # Clave AES-256-GCM (32 bytes en base64 url-safe) para cifrar API Keys de exchanges en BD.
    # Genera con: base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()
    ENCRYPTION_KEY: str

    # --- Aplicación ----------------------------------------------------------
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    # Logs en JSON (producción) o consola legible (desarrollo)
    LOG_JSON: bool = True

    # --- Sincronización con exchanges ----------------------------------------
    # Intervalo mínimo: 5 minutos (límite de peso de la API de Binance)
    SYNC_INTERVAL_MINUTES: int = 5

    # URL base de la API de Binance (permite apuntar a testnet en desarrollo)
    BINANCE_API_BASE_URL: str = "https://api.binance.com"

    # Inicio del historial en la primera sincronización: 2021-01-01 00:00:00 UTC
    SYNC_HISTORY_START_MS: int = 1_609_459_200_000

    # Un "syncing" más antiguo que esto es un run interrumpido (proceso caído)
    SYNC_STALE_AFTER_MINUTES: int = 60

    # --- Reconciliación ------------------------------------------------------
    # Constantes empíricas: revisables a nivel de producto
    RECONCILIATION_AMOUNT_TOLERANCE: float = 0.02
    RECONCILIATION_DEPOSIT_LOOKBACK_MINUTES: int = 60
    RECONCILIATION_WITHDRAWAL_LOOKAHEAD_MINUTES: int = 120
    # Venta tras un depósito enlazado dentro de esta ventana: posible off-ramp
    RECONCILIATION_OFF_RAMP_WINDOW_MINUTES: int = 1440

    # --- Valoración ----------------------------------------------------------
    # Pausa entre llamadas a la fuente de precios externa
    PRICE_REQUEST_DELAY_SECONDS: float = 0.05
    BACKFILL_BATCH_SIZE: int = 500

    @field_validator("SYNC_INTERVAL_MINUTES")
    @classmethod
    def validate_sync_interval(cls, v: int) -> int:
        if v < 5:
            raise ValueError("SYNC_INTERVAL_MINUTES debe ser >= 5 (límite de la API de Binance)")
        return v

    @field_validator("RECONCILIATION_AMOUNT_TOLERANCE")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("RECONCILIATION_AMOUNT_TOLERANCE debe estar entre 0 y 1")
        return v

    @field_validator(
        "SYNC_STALE_AFTER_MINUTES",
        "RECONCILIATION_DEPOSIT_LOOKBACK_MINUTES",
        "RECONCILIATION_WITHDRAWAL_LOOKAHEAD_MINUTES",
        "RECONCILIATION_OFF_RAMP_WINDOW_MINUTES",
    )
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Las ventanas de tiempo deben ser > 0 minutos")
        return v

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        allowed = {"development", "production", "test"}
        if v not in allowed:
            raise ValueError(f"APP_ENV debe ser uno de: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {allowed}")
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """Instancia singleton de Settings, cacheada para evitar re-lecturas del .env."""
    return Settings()


# Exportación conveniente para importar directamente en otros módulos
settings: Settings = get_settings()
