from typing import Any

from mcp.server.transport_security import TransportSecuritySettings
from pydantic import Field, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["TransportConfig"]

ENV_PREFIX = "MCP_"


class TransportConfig(BaseSettings):
    """Tunables of the resumable session transport.

    All durations are in seconds. Every field can be set from the environment,
    ``MCP_SESSION_TIMEOUT=900`` overrides ``session_timeout`` and so on. List
    fields take JSON, e.g. ``MCP_ALLOWED_HOSTS='["localhost:*"]'``.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, frozen=True, extra="ignore")

    # Inactivity window after which a session is invalid
    session_timeout: PositiveFloat = 30 * 60
    # Minimum delay between two expiry sweeps piggybacked on session validation
    sweep_interval: PositiveFloat = 60.0
    # Retention horizon of logged events, None keeps them until the session goes away
    event_ttl: PositiveFloat | None = 60 * 60
    heartbeat_interval: PositiveFloat = 30.0
    cancellation_grace_period: PositiveFloat = 60.0
    max_message_size: PositiveInt = 4 * 1024 * 1024
    max_batch_bytes: PositiveInt = 32 * 1024
    max_batch_items: int = Field(default=5, ge=1)
    # Always reply with a JSON body, even to clients accepting event streams
    json_response: bool = False
    # Redis URL for the session/event store, None selects the in-memory store
    redis_url: str | None = None

    # DNS rebinding protection
    enable_dns_rebinding_protection: bool = False
    # "localhost:*" allows any port
    allowed_hosts: list[str] = Field(default_factory=list)
    # "*" allows every origin
    allowed_origins: list[str] = Field(default_factory=list)

    @field_validator("event_ttl", "redis_url", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        return value

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "TransportConfig":
        """Build a config from environment variables named ``<prefix><FIELD>``.

        Keyword overrides win over the environment.
        """
        return cls(_env_prefix=prefix, **overrides)

    @property
    def transport_security(self) -> TransportSecuritySettings:
        return TransportSecuritySettings(
            enable_dns_rebinding_protection=self.enable_dns_rebinding_protection,
            allowed_hosts=list(self.allowed_hosts),
            allowed_origins=list(self.allowed_origins),
        )
