from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    database_url: str = "sqlite:///./qrmenu.db"
    redis_url: str = "redis://localhost:6379/0"
    use_redis_order_numbers: bool = False
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # Order defaults
    default_prep_time: int = 15
    currency: str = "PKR"
    strict_order_totals: bool = False
    customer_orders_limit: int = 50

    # Order boards
    board_poll_interval: float = 3.0

    class Config:
        env_file = ".env"

settings = Settings()
