from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError

from jobfeed.errors import ConfigurationError

JobSiteFilterMode = Literal["client", "server", "both"]

REQUIRED_ENV_VARS = {
    "token_url": "WORKDAY_TOKEN_URL",
    "rest_api_endpoint": "WORKDAY_REST_API_ENDPOINT",
    "client_id": "WORKDAY_CLIENT_ID",
    "client_secret": "WORKDAY_CLIENT_SECRET",
    "refresh_token": "WORKDAY_REFRESH_TOKEN",
}
OPTIONAL_ENV_VARS = {
    "job_site_filter": "WORKDAY_JOB_SITE_FILTER",
    "timeout_seconds": "WORKDAY_TIMEOUT_SECONDS",
    "max_jobs_cap": "JOBFEED_MAX_JOBS",
}


class WorkdaySettings(BaseModel):
    token_url: str = Field(..., min_length=1)
    rest_api_endpoint: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr
    refresh_token: SecretStr
    job_site_filter: JobSiteFilterMode = "client"
    timeout_seconds: float = Field(default=15.0, gt=0)
    max_jobs_cap: int = Field(default=1000, ge=1)

    @property
    def jobs_url(self) -> str:
        return f"{self.rest_api_endpoint.rstrip('/')}/jobPostings"

    @property
    def filters_client_side(self) -> bool:
        return self.job_site_filter in ("client", "both")

    @property
    def filters_server_side(self) -> bool:
        return self.job_site_filter in ("server", "both")

    def secret_values(self) -> list[str]:
        return [
            self.client_secret.get_secret_value(),
            self.refresh_token.get_secret_value(),
        ]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkdaySettings:
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        missing: list[str] = []
        for field_name, env_name in REQUIRED_ENV_VARS.items():
            value = env.get(env_name, "").strip()
            if value:
                values[field_name] = value
            else:
                missing.append(env_name)
        if missing:
            raise ConfigurationError("Missing Workday configuration", variables=missing)

        for field_name, env_name in OPTIONAL_ENV_VARS.items():
            value = env.get(env_name, "").strip()
            if value:
                values[field_name] = value

        try:
            return cls(**values)
        except ValidationError as exc:
            invalid = sorted(
                {
                    OPTIONAL_ENV_VARS.get(str(error["loc"][0]), str(error["loc"][0]))
                    for error in exc.errors()
                    if error["loc"]
                }
            )
            raise ConfigurationError("Invalid Workday configuration", variables=invalid) from exc
