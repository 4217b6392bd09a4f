"""Typed records exchanged with the primary object store."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AuthorizeAccountResponse(BaseModel):
    """Subset of the account authorization payload we depend on."""

    model_config = ConfigDict(extra="ignore")

    authorization_token: str = Field(alias="authorizationToken")
    api_url: str = Field(alias="apiUrl")


class UploadUrlResponse(BaseModel):
    """Upload endpoint issued for a single bucket."""

    model_config = ConfigDict(extra="ignore")

    authorization_token: str = Field(alias="authorizationToken")
    upload_url: str = Field(alias="uploadUrl")


class Session(BaseModel):
    """Short-lived credentials needed to write to the primary store.

    Built once by the handshake and replaced wholesale on refresh.
    """

    model_config = ConfigDict(frozen=True)

    auth_token: str
    api_base_url: str
    upload_url: str
    upload_token: str

    def redacted(self) -> dict[str, str]:
        return {
            "api_base_url": self.api_base_url,
            "upload_url": self.upload_url,
            "auth_token": _mask(self.auth_token),
            "upload_token": _mask(self.upload_token),
        }


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"
