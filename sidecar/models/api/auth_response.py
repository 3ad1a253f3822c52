# models/api/auth_response.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionUser(_CamelModel):
    id: str = Field(..., description="Session subject id")
    display_name: str
    email: str | None = None


class LoginResponse(_CamelModel):
    token: str = Field(..., description="Bearer token for subsequent requests")
    token_expires_at: int = Field(..., description="Token expiry, epoch seconds")
    profile_id: str
    user: SessionUser


class LogoutResponse(_CamelModel):
    logged_out: bool
