# Department-local tables. No schema is set: the tenant session's search_path
# decides which department these names resolve to.

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import Integer, String, Date, DateTime, ForeignKey
from datetime import date, datetime
from typing import Optional


class DepartmentUserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"

    user_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    first_name: str = Field(sa_column=Column(String, nullable=False))
    last_name: str = Field(sa_column=Column(String, nullable=False))
    personal_email: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    phone: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    gender: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    date_of_birth: Optional[date] = Field(default=None, sa_column=Column(Date, nullable=True))


class Student(SQLModel, table=True):
    __tablename__ = "students"

    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("user_profiles.user_id"), primary_key=True)
    )
    student_number: str = Field(sa_column=Column(String, nullable=False, unique=True))
    university_email: str = Field(sa_column=Column(String, nullable=False, unique=True))
    year_of_study: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    status: str = Field(default="active", sa_column=Column(String, nullable=False, default="active"))
    enroll_date: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
