import os
from typing import Optional
from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()

class BackendConfig(BaseModel):
    """Configuration for the keeper service."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"
    rich_logging: bool = True

    # Keeper loop settings
    poll_interval: float = 5.0
    eviction_grace: Optional[float] = None  # defaults to one poll interval
    drain_timeout: float = 30.0
    resubscribe_delay: float = 5.0
    autostart: bool = True

    @classmethod
    def from_env(cls) -> "BackendConfig":
        """Create config from environment variables."""
        grace = os.getenv("KEEPER_EVICTION_GRACE")
        return cls(
            host=os.getenv("BACKEND_HOST", "0.0.0.0"),
            port=int(os.getenv("BACKEND_PORT", "8000")),
            debug=os.getenv("BACKEND_DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            rich_logging=os.getenv("LOG_RICH", "true").lower() == "true",
            poll_interval=float(os.getenv("KEEPER_POLL_INTERVAL", "5")),
            eviction_grace=float(grace) if grace else None,
            drain_timeout=float(os.getenv("KEEPER_DRAIN_TIMEOUT", "30")),
            resubscribe_delay=float(os.getenv("KEEPER_RESUBSCRIBE_DELAY", "5")),
            autostart=os.getenv("KEEPER_AUTOSTART", "true").lower() == "true",
        )

# Global config instance
config = BackendConfig.from_env()
