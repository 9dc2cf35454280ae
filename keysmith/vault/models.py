"""Vault data models."""

from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


API_KEY_MAX_LENGTH = 256
API_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class SecretType(StrEnum):
    API_KEY = "apiKey"
    OAUTH = "oauth"


class _VaultModel(BaseModel):
    # camelCase aliases for the UI boundary, snake_case inside Python
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SecretRecord(_VaultModel):
    """A secret with its decrypted value. Lives only in process memory."""

    id: str
    service_id: str = ""
    name: str = ""
    type: SecretType
    value: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    last_verified: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("id must not be empty")
        return v

    @model_validator(mode="after")
    def _api_key_format(self) -> SecretRecord:
        if self.type is SecretType.API_KEY:
            if len(self.value) > API_KEY_MAX_LENGTH:
                raise ValueError(f"API key must not exceed {API_KEY_MAX_LENGTH} characters")
            if not API_KEY_PATTERN.fullmatch(self.value):
                raise ValueError("API key contains invalid characters")
        return self

    def __repr__(self) -> str:
        return f"SecretRecord(id={self.id!r}, service_id={self.service_id!r}, type={self.type.value!r})"

    __str__ = __repr__


class SecretMetadata(_VaultModel):
    """A vault entry (metadata only — never includes the decrypted value)."""

    id: str
    service_id: str = ""
    name: str = ""
    type: SecretType
    expires_at: datetime | None = None
    last_verified: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    has_refresh_token: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
