# app/services/identity_map.py

from loguru import logger

from app.core.exceptions import Conflict, NotFound
from app.schemas.identity import LocalIdentity


class IdentityMap:
    """
    Bridges central identities (university email) and department-local
    user ids. Two lookup directions, kept as separate operations:

    - resolve_by_email(email, dept_id=None): forward lookup. Without dept_id
      the email must map into exactly one department; cross-department
      callers always pass dept_id.
    - resolve_by_local_id(local_user_id, dept_id): reverse lookup, used when
      one department acts on a row owned by another.

    A missing mapping is NotFound; a just-provisioned user whose mapping has
    not been written yet is indistinguishable from an unknown one.
    """

    def __init__(self, registry):
        self.registry = registry

    async def resolve_by_email(self, email: str, dept_id: int | None = None) -> LocalIdentity:
        async with self.registry.central() as central:
            rows = await central.find_identities(email, dept_id)

        if not rows:
            where = f" in department {dept_id}" if dept_id is not None else ""
            raise NotFound(f"No department identity found for '{email}'{where}")

        if dept_id is None and len(rows) > 1:
            departments = ", ".join(r["schema_prefix"] for r in rows)
            logger.error(f"Identity '{email}' maps into several departments: {departments}")
            raise Conflict(
                f"'{email}' belongs to more than one department ({departments}); "
                "specify the department explicitly"
            )

        return LocalIdentity(**rows[0])

    async def resolve_by_local_id(self, local_user_id: int, dept_id: int) -> LocalIdentity:
        async with self.registry.central() as central:
            row = await central.find_identity_by_local_id(local_user_id, dept_id)
        if row is None:
            raise NotFound(f"No identity for local user {local_user_id} in department {dept_id}")
        return LocalIdentity(**row)

    async def record(self, email: str, dept_id: int, local_user_id: int) -> bool:
        """Idempotent insert. Returns True only when a new row was written."""
        async with self.registry.central() as central:
            inserted = await central.add_identity(email, dept_id, local_user_id)
        if inserted:
            logger.info(f"Mapped '{email}' -> dept {dept_id} local user {local_user_id}")
        return inserted
