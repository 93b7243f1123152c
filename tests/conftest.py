import os
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# ------------------------------------------------------------------
# Settings are read at import time: set them BEFORE importing app.main.
# No database is touched: every test swaps in the in-memory registry.
# ------------------------------------------------------------------
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DIRECTORY_SYNC_ENABLED"] = "false"
os.environ["JOB_SECRET"] = "job-secret"
os.environ["REDIS_URL"] = ""

from app.main import app  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.models.enums import ROLE_CENTRAL_ADMIN, ROLE_DEPARTMENT_ADMIN  # noqa: E402
from app.services.directory_sync import DirectorySyncService  # noqa: E402

from fakes import FakeRegistry  # noqa: E402

CS = 1
MATH = 2


def build_university() -> SimpleNamespace:
    """
    Two departments. Module id 7 exists in both (CS107 and MA107), and the
    CS student and the Maths student share local user id 42.
    """
    registry = FakeRegistry()
    registry.add_department(CS, "Computer Science", "cs_schema")
    registry.add_department(MATH, "Mathematics", "math_schema")

    registry.add_module("cs_schema", 1, "CS101", "Programming")
    registry.add_module("cs_schema", 7, "CS107", "Algorithms")
    registry.add_module("cs_schema", 9, "CS109", "Retired Module", is_active=False)
    registry.add_module("cs_schema", 4, "CS204", "Databases", is_global=True)

    registry.add_module("math_schema", 7, "MA107", "Linear Algebra", is_global=True)
    registry.add_module("math_schema", 3, "MA103", "Calculus", is_global=True)
    registry.add_module("math_schema", 5, "MA205", "Topology")

    student = registry.add_student(
        "cs_schema", "s1@uni.ac", local_user_id=42, first_name="Sam", last_name="One"
    )
    math_student = registry.add_student(
        "math_schema", "m1@uni.ac", local_user_id=42, first_name="Mia", last_name="Two"
    )

    cs_admin = registry.add_user("cs.admin@uni.ac", links=[(CS, ROLE_DEPARTMENT_ADMIN)])
    registry.add_central_profile(cs_admin.user_id, "Carol", "Admin", office="B12")
    math_admin = registry.add_user("math.admin@uni.ac", links=[(MATH, ROLE_DEPARTMENT_ADMIN)])
    chief = registry.add_user("chief@uni.ac", roles=[ROLE_CENTRAL_ADMIN])
    registry.add_central_profile(chief.user_id, "Grace", "Chief")

    return SimpleNamespace(
        registry=registry,
        student=student,
        math_student=math_student,
        cs_admin=cs_admin,
        math_admin=math_admin,
        chief=chief,
    )


def bearer(user) -> dict:
    token = create_access_token(user.user_id, user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def university():
    return build_university()


@pytest.fixture
def registry(university):
    return university.registry


@pytest_asyncio.fixture
async def client(registry):
    """App wired to the in-memory registry; lifespan events are not run."""
    saved = (app.state.registry, app.state.directory_sync)
    app.state.registry = registry
    app.state.directory_sync = DirectorySyncService(registry, overwrite_existing_passwords=True)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            yield ac
    finally:
        app.state.registry, app.state.directory_sync = saved
