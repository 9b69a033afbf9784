import os
from typing import List, Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()

DEFAULT_ALREADY_SETTLED_MARKERS = [
    "already settled",
    "already calculated",
    "game is over",
    "game not active",
    "round already",
]

MAX_BACKOFF_EXPONENT = 32

def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))

def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))

class LedgerConfig(BaseModel):
    """Connection and signing settings for the EVM ledger."""
    rpc_url: str = "http://127.0.0.1:8545"
    console_address: Optional[str] = Field(None, description="GameConsole contract that announces matches")
    owner_private_key: Optional[str] = Field(None, repr=False, description="Key allowed to call calculateResult")
    start_block: int = Field(0, ge=0, description="First block scanned when rebuilding the registry")
    log_poll_interval: float = Field(2.0, gt=0, description="Seconds between MatchFound log polls")
    log_block_span: int = Field(2000, gt=0, description="Max blocks per get_logs request")
    receipt_timeout: float = Field(30.0, gt=0, description="Seconds to wait for a settlement receipt")
    already_settled_markers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALREADY_SETTLED_MARKERS),
        description="Lowercase revert-reason fragments that mean the round was already settled",
    )

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Create config from environment variables."""
        markers = os.getenv("KEEPER_ALREADY_SETTLED_MARKERS")
        return cls(
            rpc_url=os.getenv("KEEPER_RPC_URL", "http://127.0.0.1:8545"),
            console_address=os.getenv("KEEPER_CONSOLE_ADDRESS") or None,
            owner_private_key=os.getenv("KEEPER_OWNER_PRIVATE_KEY") or None,
            start_block=_env_int("KEEPER_START_BLOCK", 0),
            log_poll_interval=_env_float("KEEPER_LOG_POLL_INTERVAL", 2.0),
            log_block_span=_env_int("KEEPER_LOG_BLOCK_SPAN", 2000),
            receipt_timeout=_env_float("KEEPER_RECEIPT_TIMEOUT", 30.0),
            already_settled_markers=(
                [m.strip().lower() for m in markers.split(",") if m.strip()]
                if markers else list(DEFAULT_ALREADY_SETTLED_MARKERS)
            ),
        )

class SettlementPolicy(BaseModel):
    """Retry and timeout policy for settlement calls."""
    max_attempts: int = Field(5, ge=1, description="Submit calls per logical attempt")
    base_delay: float = Field(1.0, ge=0, description="Backoff base in seconds")
    max_delay: float = Field(30.0, ge=0, description="Backoff cap in seconds")
    call_timeout: float = Field(45.0, gt=0, description="Timeout for one submit round-trip")
    read_timeout: float = Field(10.0, gt=0, description="Timeout for one round-state read")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based): base * 2^attempt, capped."""
        # Exponent is clamped so long failure streaks can't overflow the float product
        return min(self.base_delay * (2 ** min(attempt, MAX_BACKOFF_EXPONENT)), self.max_delay)

    @classmethod
    def from_env(cls) -> "SettlementPolicy":
        """Create policy from environment variables."""
        return cls(
            max_attempts=_env_int("KEEPER_MAX_ATTEMPTS", 5),
            base_delay=_env_float("KEEPER_BASE_DELAY", 1.0),
            max_delay=_env_float("KEEPER_MAX_DELAY", 30.0),
            call_timeout=_env_float("KEEPER_CALL_TIMEOUT", 45.0),
            read_timeout=_env_float("KEEPER_READ_TIMEOUT", 10.0),
        )
