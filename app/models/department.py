from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Integer, String
from typing import Optional

from app.models.user import CENTRAL_SCHEMA


class Department(SQLModel, table=True):
    __tablename__ = "departments"
    __table_args__ = {"schema": CENTRAL_SCHEMA}

    dept_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )

    name: str = Field(
        sa_column=Column(String(128), nullable=False, unique=True)
    )

    # Tenant key: the Postgres schema holding this department's tables
    schema_prefix: str = Field(
        sa_column=Column(String(63), nullable=False, unique=True)
    )

    # Optional per-department database location; empty means the shared department server
    host: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    port: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    dbname: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))

    status: str = Field(default="active", sa_column=Column(String, nullable=False, default="active"))
    contact_email: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
