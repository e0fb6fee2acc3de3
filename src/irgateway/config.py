from pydantic import SecretStr
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Application configuration loaded from environment variables."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8787
    debug: bool = False
    api_key: str  # Key inbound callers present via x-api-key or Authorization: Bearer
    cors_origins: list[str] = []
    upstream_base_url: str = "https://members-ng.iracing.com"
    upstream_email: str
    upstream_password: SecretStr
    user_agent: str = "ImpactGateway/1.0"
    login_ttl_ms: int = 25 * 60 * 1000  # Session is re-established after this long even if cookies remain
    request_timeout: float = 30.0  # Seconds per upstream call

    model_config = {
        "env_file": [".env"],
        "env_prefix": "IRGATEWAY_",
        "extra": "ignore",
    }

    @property
    def login_ttl(self) -> float:
        """Session validity window in seconds."""
        return self.login_ttl_ms / 1000
