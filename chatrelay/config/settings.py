"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATRELAY_", extra="ignore")

    app_name: str = "ChatRelay"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG only: log the full inbound history instead of just its size
    log_full_request_body: bool = False

    backend_provider: str = "openai"  # openai | gemini
    backend_base_url: str = "https://api.openai.com/v1"
    backend_api_key: str = ""
    backend_model: str = "gpt-4o-mini"
    backend_timeout_seconds: float = Field(default=60.0, gt=0.0)
    backend_max_connections: int = 100
    backend_max_keepalive_connections: int = 20

    default_prompt: str = "Continue the conversation."
    # comma separated "alias:role" pairs, applied before role validation
    role_aliases: str = "model:assistant"


settings = Settings()
