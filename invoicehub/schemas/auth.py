from typing import List, Optional

from pydantic import BaseModel


class LoginRequest(BaseModel):
    identifier: str  # username or email
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: str
    username: str
    email: str
    roles: List[str]
    full_name: Optional[str] = None
    billing_class: Optional[str] = None
