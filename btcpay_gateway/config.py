"""Gateway settings, read from the environment and the project's .env file."""
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


class ConfirmationPolicy(str, Enum):
    """BitPay transaction speed: how many confirmations BTCPay waits for."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value):
        aliases = {"paid": cls.HIGH, "confirmed": cls.MEDIUM, "complete": cls.LOW}
        value = (value or "").strip().lower()
        if value in aliases:
            return aliases[value]
        return cls(value)


class GatewaySettings(BaseSettings):
    """BTCPay settings come from ``BTCPAY_*`` variables, storefront ones keep their own names."""

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_prefix="BTCPAY_",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
        frozen=True,
    )

    mode: Literal["test", "live"] = "test"
    server_livenet: str = ""
    server_testnet: str = ""
    confirmation_policy: ConfirmationPolicy = ConfirmationPolicy.MEDIUM
    debug_log: bool = False
    send_buyer_email: bool = True
    send_buyer_address: bool = True
    notify_url: str = ""
    request_timeout: int = Field(default=30, gt=0, validation_alias="BTCPAY_TIMEOUT")
    storefront_url: str = Field(default="", validation_alias="STOREFRONT_URL")
    payment_step: str = Field(default="order_information", validation_alias="CHECKOUT_PAYMENT_STEP")
    jwt_secret: str = Field(default="", validation_alias="JWT_SECRET")

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("confirmation_policy", mode="before")
    @classmethod
    def _parse_policy(cls, value):
        if isinstance(value, ConfirmationPolicy):
            return value
        return ConfirmationPolicy.parse(value)

    @field_validator("storefront_url")
    @classmethod
    def _strip_trailing_slash(cls, value):
        return value.rstrip("/")

    @property
    def network(self) -> str:
        return "livenet" if self.mode == "live" else "testnet"

    @property
    def server_url(self) -> str:
        host = self.server_livenet if self.mode == "live" else self.server_testnet
        host = host.strip().rstrip("/")
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return host


@lru_cache()
def get_settings() -> GatewaySettings:
    return GatewaySettings()
