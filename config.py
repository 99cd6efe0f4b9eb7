from functools import lru_cache
from typing import Set

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "thulodeal"
    JWT_SECRET: str = "devsecret"
    JWT_ALGO: str = "HS256"
    JWT_EXPIRE_DAYS: int = 7
    # Comma separated, e.g. ADMIN_EMAILS=owner@shop.com,ops@shop.com
    ADMIN_EMAILS: str = ""
    CART_STORE_PATH: str = "carts.json"
    MAX_UPLOAD_BYTES: int = 3 * 1024 * 1024
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    @property
    def admin_emails(self) -> Set[str]:
        return {e.strip().lower() for e in self.ADMIN_EMAILS.split(",") if e.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
