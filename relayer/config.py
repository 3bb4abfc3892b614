from decimal import Decimal
from pathlib import Path
from typing import Any, List

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

GWEI = 10**9
ETHER = 10**18


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=3000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="auto",
        pattern="^(auto|json|console)$",
        description="Log renderer; auto picks console at DEBUG and JSON otherwise",
    )
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Comma separated origins allowed by CORS",
    )

    # Ledger
    ledger_backend: str = Field(
        default="rpc",
        pattern="^(rpc|mock)$",
        description="Ledger client implementation (rpc or mock)",
    )
    rpc_url: str = Field(
        default="",
        description="JSON-RPC endpoint of the target chain",
        validation_alias=AliasChoices("rpc_url", "AMOY_RPC_URL"),
    )
    relayer_private_key: str = Field(
        default="",
        description="Signing key of the relay account",
        validation_alias=AliasChoices("relayer_private_key", "AMOY_RELAYER_PRIVATE_KEY"),
    )
    contract_address: str = Field(
        default="",
        description="Verifier contract that executes meta-transactions",
        validation_alias=AliasChoices("contract_address", "AMOY_CONTRACT_ADDRESS"),
    )
    chain_id: int = Field(default=80002, description="Chain ID of the target network")
    network: str = Field(default="amoy", description="Network name clients must send")
    rpc_timeout_seconds: float = Field(default=20.0, description="Per-call JSON-RPC timeout")
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between receipt polls while awaiting confirmation",
    )

    # Relay account health
    min_operating_reserve_wei: int = Field(
        default=ETHER // 10,
        ge=0,
        description="Refuse to submit when the relay balance falls below this reserve",
    )
    enforce_nonce_check: bool = Field(
        default=True,
        description="Reject intents whose declared nonce does not match the chain",
    )

    # Fee policy
    fee_reliability_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiplier applied to reported network prices",
    )
    min_gas_price_wei: int = Field(default=30 * GWEI, ge=0, description="Floor for single-price networks")
    min_max_fee_wei: int = Field(default=30 * GWEI, ge=0, description="Floor for maxFeePerGas")
    min_priority_fee_wei: int = Field(default=30 * GWEI, ge=0, description="Floor for maxPriorityFeePerGas")

    # Gas limit policy
    gas_limit_multiplier: float = Field(default=1.2, ge=1.0, description="Safety margin on the first attempt")
    gas_limit_multiplier_step: float = Field(
        default=0.2,
        ge=0.0,
        description="Extra margin added per retry",
    )
    gas_limit_ceiling: int = Field(
        default=1_000_000,
        gt=0,
        description="Hard cap on the gas limit; estimates above it are rejected",
    )

    # Retry policy
    max_attempts: int = Field(default=3, ge=1, description="Submission attempts per intent")
    submission_timeout_seconds: float = Field(default=30.0, gt=0, description="Wall-clock cap on a single submit")
    confirmation_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Confirmation window of the first attempt; scaled by attempt number",
    )
    backoff_base_seconds: float = Field(default=1.0, ge=0, description="First retry delay")
    backoff_max_seconds: float = Field(default=30.0, ge=0, description="Upper bound on retry delay")
    submit_wait_for_result: bool = Field(
        default=True,
        description="POST /submit waits for a terminal status unless ?wait=false",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long shutdown waits for in-flight pipelines",
    )

    # Status store
    status_store_backend: str = Field(
        default="sqlite",
        pattern="^(memory|sqlite|redis)$",
        description="Where submission records are persisted",
    )
    status_store_path: str = Field(
        default=str(BASE_DIR / "relayer_status.db"),
        description="SQLite database file for the status store",
    )
    redis_url: str = Field(
        default="",
        description="Redis connection string for the redis status store",
    )

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True, description="Enable per-client rate limiting")
    rate_limit_requests: int = Field(default=100, ge=1, description="Requests allowed per window")
    rate_limit_window_seconds: int = Field(default=900, ge=1, description="Rate limit window")

    @field_validator("relayer_private_key", mode="before")
    @classmethod
    def _prefix_private_key(cls, value: Any) -> Any:
        if isinstance(value, str) and value and not value.startswith("0x"):
            return f"0x{value}"
        return value

    @property
    def allowed_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def has_signing_key(self) -> bool:
        return bool(self.relayer_private_key)

    @property
    def has_contract(self) -> bool:
        return bool(self.contract_address)

    def confirmation_timeout_for(self, attempt: int) -> float:
        """Confirmation window for an attempt; later attempts wait longer."""
        return self.confirmation_timeout_seconds * max(attempt, 1)

    def backoff_for(self, attempt: int) -> float:
        """Exponential backoff after a failed attempt, capped at backoff_max_seconds."""
        delay = self.backoff_base_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)

    def gas_limit_multiplier_for(self, attempt: int) -> Decimal:
        """Safety margin for an attempt, exact so the resulting gas limit is too."""
        step = Decimal(str(self.gas_limit_multiplier_step)) * max(attempt - 1, 0)
        return Decimal(str(self.gas_limit_multiplier)) + step


# Global settings instance
settings = Settings()
