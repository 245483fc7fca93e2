import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_PORT = 3000

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    """Process configuration, built once at startup and passed to the app."""
    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_MODEL
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv()

        port = os.getenv("PORT") or str(DEFAULT_PORT)
        try:
            port_number = int(port)
        except ValueError:
            raise ValueError(f"Invalid PORT value: {port!r}")

        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL") or DEFAULT_MODEL,
            host=os.getenv("HOST") or "0.0.0.0",
            port=port_number,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
