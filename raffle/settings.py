import logging
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = 'Raffle Board API'
    # store
    database_url: str = 'sqlite+aiosqlite:///db.sqlite3'
    database_echo: bool = False
    collection_name: str = 'sold'
    store_timeout: float = 5.0
    store_retries: int = 2
    store_retry_delay: float = 0.2
    poll_interval: float | None = None
    resubscribe_attempts: int = 3
    # registry
    sell_strategy: Literal['atomic', 'check_then_write'] = 'atomic'
    log_level: str = 'INFO'

    model_config = SettingsConfigDict(
        env_prefix='RAFFLE_', env_file='.env', extra='ignore'
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
