# app/models/user.py

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import DateTime, ForeignKey, Integer, String, Date
from datetime import date, datetime
from typing import Optional

from app.models.enums import UserStatus, RoleScope

CENTRAL_SCHEMA = "central"


class GlobalUser(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    user_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )

    email: str = Field(
        sa_column=Column(String, nullable=False, unique=True, index=True)
    )
    password_hash: str = Field(sa_column=Column(String, nullable=False))

    # Never hard-deleted; roles keep pointing at suspended users
    status: str = Field(
        default=UserStatus.Active.value,
        sa_column=Column(String, nullable=False, default=UserStatus.Active.value)
    )

    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    role_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    name: str = Field(sa_column=Column(String, nullable=False, unique=True))
    scope: str = Field(
        default=RoleScope.Department.value,
        sa_column=Column(String, nullable=False)
    )


class UserRoleLink(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.users.user_id"), primary_key=True)
    )
    role_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.roles.role_id"), primary_key=True)
    )
    assigned_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class UserDepartment(SQLModel, table=True):
    """Binds a centrally-owned user (admins, staff) to a department with a role."""
    __tablename__ = "user_department"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.users.user_id"), primary_key=True)
    )
    dept_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.departments.dept_id"), primary_key=True)
    )
    role_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.roles.role_id"), primary_key=True)
    )
    assigned_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class CentralUserProfile(SQLModel, table=True):
    __tablename__ = "user_profiles"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.users.user_id"), primary_key=True)
    )
    first_name: str = Field(sa_column=Column(String, nullable=False))
    last_name: str = Field(sa_column=Column(String, nullable=False))
    phone: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    office: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    timezone: Optional[str] = Field(default="UTC", sa_column=Column(String, nullable=True))
    date_of_birth: Optional[date] = Field(default=None, sa_column=Column(Date, nullable=True))
