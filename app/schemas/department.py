from datetime import date
from typing import Optional

from pydantic import EmailStr, Field

from app.schemas.common import CamelModel


class StudentCreate(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    student_number: str = Field(min_length=1)
    university_email: EmailStr
    personal_email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    year_of_study: int = Field(default=1, ge=1)
    # Which administered department, when the admin has several
    department_id: Optional[int] = None

    class Config:
        json_schema_extra = {
            "examples": [
                {
                    "firstName": "Ada",
                    "lastName": "Lovelace",
                    "studentNumber": "CS2024001",
                    "universityEmail": "ada@uni.ac",
                    "dateOfBirth": "2000-05-03",
                }
            ]
        }


class StudentCreated(CamelModel):
    user_id: int
    student_number: str
    university_email: str
    department_id: int
    department_name: str
