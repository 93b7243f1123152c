# app/core/database.py

import re
import ssl
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable

from loguru import logger
from sqlmodel import SQLModel
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from app.core.config import settings
from app.core.exceptions import NotFound, ServiceUnavailable
from app.models.department import Department
from app.models.identity import UserIdMap
from app.models.user import (
    CENTRAL_SCHEMA,
    GlobalUser,
    Role,
    UserRoleLink,
    UserDepartment,
    CentralUserProfile,
)
from app.repositories.central import CentralRepository
from app.repositories.department import DepartmentRepository

CENTRAL_TENANT = "central"

# Postgres identifier rules, lower-case only
SCHEMA_PREFIX_PATTERN = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

# Failures that mean "could not reach the tenant", as opposed to a bad statement
CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    sa_exc.TimeoutError,
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
)

CENTRAL_TABLES = [
    GlobalUser.__table__,
    Role.__table__,
    UserRoleLink.__table__,
    Department.__table__,
    UserDepartment.__table__,
    UserIdMap.__table__,
    CentralUserProfile.__table__,
]


# ----------------------------------------------------
# SSL for managed poolers
# ----------------------------------------------------
def make_ssl():
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


@asynccontextmanager
async def unavailable_on_failure(tenant: str) -> AsyncIterator[None]:
    """Translate connectivity failures into ServiceUnavailable naming the tenant."""
    try:
        yield
    except CONNECTION_ERRORS as e:
        logger.error(f"Tenant '{tenant}' unreachable: {e!r}")
        raise ServiceUnavailable(tenant) from e


class TenantRegistry:
    """
    Hands out sessions scoped to one tenant: the central database, or one
    department schema. Every tenant has its own engine (and pool), keyed by
    schema prefix; department engines pin search_path to "<prefix>,public"
    at connect time, so a pooled connection can never carry another
    tenant's scope.
    """

    def __init__(
        self,
        central_url: str,
        department_url: str,
        *,
        pool_size: int = 5,
        pool_timeout: float = 10.0,
        connect_timeout: float = 5.0,
        use_ssl: bool = False,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ):
        self.central_url = central_url
        self.department_url = department_url
        self.pool_size = pool_size
        self.pool_timeout = pool_timeout
        self.connect_timeout = connect_timeout
        self.use_ssl = use_ssl
        self._engine_factory = engine_factory

        self._central_engine: AsyncEngine | None = None
        self._engines: dict[str, AsyncEngine] = {}
        self._departments: dict[str, Department] = {}
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "TenantRegistry":
        return cls(
            settings.CENTRAL_DATABASE_URL,
            settings.DEPARTMENT_DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            connect_timeout=settings.DB_CONNECT_TIMEOUT,
            use_ssl=settings.DB_SSL,
        )

    # ----------------------------------------------------
    # Engines
    # ----------------------------------------------------
    def _connect_args(self, search_path: str | None = None) -> dict:
        connect_args = {"timeout": self.connect_timeout}
        if self.use_ssl:
            connect_args["ssl"] = make_ssl()
            connect_args["statement_cache_size"] = 0
        if search_path:
            connect_args["server_settings"] = {"search_path": search_path}
        return connect_args

    def _create_engine(self, url, search_path: str | None = None) -> AsyncEngine:
        return self._engine_factory(
            url,
            echo=False,
            pool_pre_ping=True,
            pool_size=self.pool_size,
            pool_timeout=self.pool_timeout,
            connect_args=self._connect_args(search_path),
        )

    @property
    def open_pools(self) -> int:
        return len(self._engines) + (1 if self._central_engine is not None else 0)

    def engine_for(self, schema_prefix: str | None) -> AsyncEngine:
        if schema_prefix is None:
            if self._central_engine is None:
                self._central_engine = self._create_engine(self.central_url)
            return self._central_engine

        department = self._known_department(schema_prefix)
        engine = self._engines.get(schema_prefix)
        if engine is None:
            url = make_url(self.department_url)
            if department.host:
                url = url.set(host=department.host)
            if department.port:
                url = url.set(port=department.port)
            if department.dbname:
                url = url.set(database=department.dbname)

            engine = self._create_engine(url, search_path=f"{schema_prefix},public")
            self._engines[schema_prefix] = engine
            logger.info(f"Opened pool for department schema '{schema_prefix}'")
        return engine

    # ----------------------------------------------------
    # Department registry (the only accepted schema prefixes)
    # ----------------------------------------------------
    def remember(self, departments: Iterable[Department]) -> None:
        for department in departments:
            self._departments[department.schema_prefix] = department

    def _known_department(self, schema_prefix: str) -> Department:
        if not SCHEMA_PREFIX_PATTERN.match(schema_prefix or ""):
            raise NotFound(f"Unknown department schema '{schema_prefix}'")
        department = self._departments.get(schema_prefix)
        if department is None:
            raise NotFound(f"Unknown department schema '{schema_prefix}'")
        return department

    async def refresh_departments(self) -> None:
        async with self._refresh_lock:
            async with self.central() as central:
                departments = await central.list_departments()
            self.remember(departments)

    async def _ensure_known(self, schema_prefix: str) -> Department:
        if schema_prefix not in self._departments and SCHEMA_PREFIX_PATTERN.match(schema_prefix or ""):
            await self.refresh_departments()
        return self._known_department(schema_prefix)

    # ----------------------------------------------------
    # Sessions
    # ----------------------------------------------------
    @asynccontextmanager
    async def session_for(
        self, schema_prefix: str | None = None, transactional: bool = False
    ) -> AsyncIterator[AsyncSession]:
        """
        transactional=False: pooled AUTOCOMMIT, each statement stands alone.
        transactional=True: the whole block is one transaction, rolled back on error.
        """
        tenant = schema_prefix or CENTRAL_TENANT
        if schema_prefix is not None:
            await self._ensure_known(schema_prefix)
        engine = self.engine_for(schema_prefix)
        if not transactional:
            engine = engine.execution_options(isolation_level="AUTOCOMMIT")

        async with unavailable_on_failure(tenant):
            async with AsyncSession(engine, expire_on_commit=False) as session:
                if transactional:
                    async with session.begin():
                        yield session
                else:
                    yield session

    @asynccontextmanager
    async def central(self, transactional: bool = False) -> AsyncIterator[CentralRepository]:
        async with self.session_for(None, transactional) as session:
            yield CentralRepository(session)

    @asynccontextmanager
    async def department(
        self, schema_prefix: str, transactional: bool = False
    ) -> AsyncIterator[DepartmentRepository]:
        async with self.session_for(schema_prefix, transactional) as session:
            yield DepartmentRepository(session, schema_prefix)

    # ----------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------
    async def init_db(self) -> None:
        """Create the central tables; department schemas and views are provisioned externally."""
        engine = self.engine_for(None)
        async with unavailable_on_failure(CENTRAL_TENANT):
            async with engine.begin() as conn:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {CENTRAL_SCHEMA}"))
                await conn.run_sync(SQLModel.metadata.create_all, tables=CENTRAL_TABLES)

    async def test_connection(self) -> None:
        async with self.central() as central:
            await central.ping()

    async def dispose(self) -> None:
        engines = list(self._engines.values())
        if self._central_engine is not None:
            engines.append(self._central_engine)
        for engine in engines:
            await engine.dispose()
        self._engines.clear()
        self._central_engine = None
