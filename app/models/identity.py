# app/models/identity.py

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Integer, String, ForeignKey, Index, UniqueConstraint, text

from app.models.user import CENTRAL_SCHEMA


class UserIdMap(SQLModel, table=True):
    """
    Bridge between the central identity space (email) and a department's
    local user_id space. At most one row per (university_email, dept_id),
    emails compared case-insensitively.
    """
    __tablename__ = "user_id_map"
    __table_args__ = (
        Index("uq_user_id_map_email_dept", text("lower(university_email)"), "dept_id", unique=True),
        UniqueConstraint("dept_id", "local_user_id", name="uq_user_id_map_dept_local"),
        {"schema": CENTRAL_SCHEMA},
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    university_email: str = Field(sa_column=Column(String, nullable=False, index=True))
    dept_id: int = Field(
        sa_column=Column(Integer, ForeignKey("central.departments.dept_id"), nullable=False)
    )
    local_user_id: int = Field(sa_column=Column(Integer, nullable=False))
