"""Pydantic models describing the popfwd runtime configuration."""
from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_STATE_PATH = "/data/state.json"


class DestinationSettings(BaseModel):
    """Destination account receiving every forwarded message."""

    model_config = ConfigDict(extra="forbid")

    email: str = ""
    app_password: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = Field(default=587, gt=0, lt=65536)


class MailboxAccount(BaseModel):
    """One source mailbox; immutable for the duration of a run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    email: str = ""
    app_password: str = ""
    pop3_host: str = "pop.mail.yahoo.com"
    pop3_port: int = Field(default=995, gt=0, lt=65536)


class RuntimeConfig(BaseModel):
    """Root configuration loaded from ``config.yml``."""

    model_config = ConfigDict(extra="forbid")

    destination: DestinationSettings = Field(default_factory=DestinationSettings)
    mailboxes: List[MailboxAccount] = Field(default_factory=list)
    state_path: str = DEFAULT_STATE_PATH
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "warning":
                return "warn"
            if lowered not in {"debug", "info", "warn", "error"}:
                return "info"
            return lowered
        return value

    def missing_fields(self) -> List[str]:
        """Return human-readable descriptions of required values still empty."""

        errors: List[str] = []
        if not self.destination.email:
            errors.append("destination.email is required")
        if not self.destination.app_password:
            errors.append(
                "destination.app_password is required "
                "(set via config or POPFWD_DEST_APP_PASSWORD)"
            )
        if not self.mailboxes:
            errors.append("at least one mailbox must be configured")
        for index, mailbox in enumerate(self.mailboxes):
            if not mailbox.email:
                errors.append(f"mailboxes[{index}].email is required")
            if not mailbox.app_password:
                errors.append(
                    f"mailboxes[{index}].app_password is required "
                    f"(set via config or POPFWD_MAILBOX_{index}_APP_PASSWORD)"
                )
        return errors
