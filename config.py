"""
Runtime configuration

Settings are read from the environment once and passed into the services
that need them. Nothing here is consulted as global state at call time.
"""
import os
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


class EmailConfig(BaseModel):
    host: str = Field("localhost", description="SMTP host")
    port: int = Field(587, description="SMTP port")
    secure: bool = Field(False, description="Use implicit TLS (SMTP over SSL)")
    user: Optional[str] = Field(None, description="SMTP login, also used as sender address")
    password: Optional[str] = Field(None, description="SMTP password")
    from_name: str = Field("ZielManager", description="Display name of the sender")
    app_url: str = Field("http://localhost:5173", description="Base URL used in email links")
    review_deadline: str = Field("12-31", description="Yearly review deadline as MM-DD")

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("review_deadline")
    @classmethod
    def check_deadline(cls, v: str) -> str:
        month, day = (int(p) for p in v.split("-"))
        # 2000 is a leap year so 02-29 is accepted
        date(2000, month, day)
        return f"{month:02d}-{day:02d}"

    @property
    def sender(self) -> str:
        return f'"{self.from_name}" <{self.user or "noreply@localhost"}>'

    def link(self, path: str) -> str:
        return f"{self.app_url}/{path.lstrip('/')}"

    @classmethod
    def from_env(cls) -> "EmailConfig":
        return cls(
            host=os.getenv("EMAIL_HOST", "localhost"),
            port=int(os.getenv("EMAIL_PORT", 587)),
            secure=_env_flag("EMAIL_SECURE"),
            user=os.getenv("EMAIL_USER"),
            password=os.getenv("EMAIL_PASSWORD"),
            from_name=os.getenv("EMAIL_FROM_NAME", "ZielManager"),
            app_url=os.getenv("APP_URL", "http://localhost:5173"),
            review_deadline=os.getenv("REVIEW_DEADLINE", "12-31"),
        )


class AppConfig(BaseModel):
    port: int = 8000
    cron_token: Optional[str] = None
    log_level: str = "INFO"
    email: EmailConfig = Field(default_factory=EmailConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            port=int(os.getenv("PORT", 8000)),
            cron_token=os.getenv("CRON_TOKEN") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            email=EmailConfig.from_env(),
        )
