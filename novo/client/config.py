from __future__ import annotations

from typing import Any, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, field_validator

from novo.config import env_field, load_env_values


class ClientSettings(BaseModel):
    """Settings for applications embedding the session client."""

    api_base_url: str = env_field("http://localhost:8000", "NOVO_API_BASE_URL")
    state_path: Optional[str] = env_field(None, "NOVO_STATE_PATH")
    request_timeout_seconds: float = env_field(10.0, "NOVO_REQUEST_TIMEOUT_SECONDS", gt=0)
    popup_poll_interval_seconds: float = env_field(1.0, "NOVO_POPUP_POLL_INTERVAL_SECONDS", gt=0)
    popup_timeout_seconds: float = env_field(300.0, "NOVO_POPUP_TIMEOUT_SECONDS", gt=0)
    # Unset means only the API origin may post the popup result
    allowed_message_origins: Optional[List[str]] = env_field(None, "NOVO_ALLOWED_MESSAGE_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(**load_env_values(cls))

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("allowed_message_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            origins = [o.strip().rstrip("/") for o in value.split(",") if o.strip()]
            return origins or None
        return value

    def message_origins(self) -> List[str]:
        if self.allowed_message_origins is not None:
            return self.allowed_message_origins
        parts = urlsplit(self.api_base_url)
        return [f"{parts.scheme}://{parts.netloc}"]
