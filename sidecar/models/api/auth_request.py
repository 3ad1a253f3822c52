# models/api/auth_request.py
from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    """Credentials for the CRM password grant."""

    model_config = ConfigDict(populate_by_name=True)

    profile_id: str | None = Field(
        default=None, alias="profileId", description="Profile to sign in to (ignored when the host is mapped)"
    )
    username: str = Field(..., description="CRM username")
    password: str = Field(..., description="CRM password")
