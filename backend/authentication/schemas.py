from pydantic import BaseModel, Field

ROLE_PATTERN = "^(admin|analyst)$"


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    role: str
    username: str


class UserResponse(BaseModel):
    username: str
    role: str = Field(..., pattern=ROLE_PATTERN)
    is_active: bool
