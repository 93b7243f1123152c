from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional

from app.schemas.common import CamelModel


# -------------------------------------------------------------------
# LOGIN REQUEST
# -------------------------------------------------------------------
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)

    class Config:
        json_schema_extra = {
            "examples": [
                {"email": "s1@uni.ac", "password": "20000503"},
            ]
        }


# -------------------------------------------------------------------
# LOGIN RESPONSE
# -------------------------------------------------------------------
class DepartmentRole(CamelModel):
    dept_id: int
    department_name: str
    schema_prefix: str
    role: Optional[str] = None


class LoginResponse(CamelModel):
    token: str
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    user_id: int
    username: str
    email: str
    roles: List[str]
    department_roles: List[DepartmentRole]


class VerifyResponse(CamelModel):
    valid: bool
    user_id: int
