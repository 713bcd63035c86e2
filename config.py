"""
Runtime configuration

Settings are read once from the environment when the app is built and handed
to everything that needs them. Nothing below is a module-level singleton.
"""

import logging
import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")
    port: int = Field(8000, ge=1, le=65535)
    log_level: str = Field("INFO", description="Root log level")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    currency: str = Field("DZD", description="Currency label used in display strings")

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            port=int(os.getenv("PORT", 8000)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
