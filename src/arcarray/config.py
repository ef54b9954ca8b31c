"""Settings read from the process environment."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOST = "https://www.arcgis.com"

# environment variable -> settings field
ENV_VARS = {
    "ARCGIS_HOST": "host",
    "ARCGIS_CLIENT": "client_id",
    "ARCGIS_SECRET": "client_secret",
    "ARCGIS_USER": "username",
    "ARCGIS_API_KEY": "api_key",
}


class ArcGISSettings(BaseModel):
    """Credentials and portal location used to build a session."""

    host: str = Field(default=DEFAULT_HOST, description="Portal URL, e.g. https://www.arcgis.com")
    client_id: Optional[str] = Field(None, description="OAuth client id (code and client flows)")
    client_secret: Optional[str] = Field(None, description="OAuth client secret (client flow)")
    username: Optional[str] = Field(None, description="Portal user for publishing and user/password auth")
    api_key: Optional[str] = Field(None, description="Developer API key")
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")

    @field_validator("host")
    @classmethod
    def strip_host(cls, host: str) -> str:
        return host.rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: object) -> "ArcGISSettings":
        """Build settings from ``ARCGIS_*`` variables; empty values count as unset."""

        env = os.environ if environ is None else environ
        values = {}
        for var, field_name in ENV_VARS.items():
            value = env.get(var)
            if value:
                values[field_name] = value.strip()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def rest_url(self) -> str:
        return f"{self.host}/sharing/rest"
