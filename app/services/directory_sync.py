# app/services/directory_sync.py

import asyncio
from collections import Counter
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from app.core.security import hash_password, verify_password
from app.schemas.sync import SyncReport

# Initial password when the pending row carries no date of birth
DEFAULT_INITIAL_PASSWORD = "changeme"


def format_dob(value: Any) -> str:
    """Initial password for a provisioned user: date of birth as YYYYMMDD."""
    if value is None or value == "":
        return DEFAULT_INITIAL_PASSWORD
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        # Raises ValueError on malformed input; the caller treats that as a row failure
        value = date.fromisoformat(str(value).strip()[:10])
    return value.strftime("%Y%m%d")


class DirectorySyncService:
    """
    Moves users announced in department outboxes (surfaced centrally as
    central.vw_pending_users) into the central directory.

    Every step is an upsert, so a cycle can be re-run over the same rows
    without creating duplicates. Nothing is marked consumed.
    """

    def __init__(self, registry, overwrite_existing_passwords: bool = True):
        self.registry = registry
        self.overwrite_existing_passwords = overwrite_existing_passwords
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def sync(self) -> SyncReport:
        if self._lock.locked():
            logger.warning("Directory sync already running; skipping this trigger")
            return SyncReport(skipped=True)

        async with self._lock:
            async with self.registry.central() as central:
                rows = await central.list_pending_users()

            report = SyncReport(seen=len(rows))
            logger.info(f"Directory sync: {len(rows)} pending user(s)")

            for row in rows:
                try:
                    outcome = await self._provision(row)
                except Exception:
                    # One bad row must not stop the rest of the cycle
                    report.failed += 1
                    logger.exception(f"Directory sync failed for row {row.get('email')!r}")
                else:
                    # Counted only once the row's transaction has committed
                    for field, n in outcome.items():
                        setattr(report, field, getattr(report, field) + n)

            logger.success(
                f"Directory sync done: created={report.created} "
                f"passwords_updated={report.passwords_updated} failed={report.failed}"
            )
            return report

    async def _provision(self, row: dict[str, Any]) -> Counter:
        email = (row.get("email") or "").strip().lower()
        if not email:
            raise ValueError("pending user row has no email")

        initial_password = format_dob(row.get("date_of_birth"))
        done: Counter = Counter()

        async with self.registry.central(transactional=True) as central:
            # (b) upsert user by email
            user = await central.get_user_by_email(email)
            if user is None:
                user = await central.create_user(email, hash_password(initial_password))
                done["created"] += 1
                logger.info(f"Provisioned central user '{email}' (id={user.user_id})")
            elif self.overwrite_existing_passwords and not verify_password(
                initial_password, user.password_hash
            ):
                await central.set_password_hash(user.user_id, hash_password(initial_password))
                done["passwords_updated"] += 1
                logger.info(f"Reset password for existing user '{email}'")

            # (c)/(d) role
            role_name = row.get("role")
            role = await central.get_role_by_name(role_name) if role_name else None
            if role is None:
                logger.warning(f"Role {role_name!r} not found; skipping role for '{email}'")
            elif await central.add_user_role(user.user_id, role.role_id):
                done["roles_assigned"] += 1

            # (e) department link + identity mapping
            department_name = row.get("department")
            department = (
                await central.get_department_by_name(department_name) if department_name else None
            )
            if department is None:
                logger.warning(f"Department {department_name!r} not found for '{email}'")
                return done

            if role is not None and await central.add_department_link(
                user.user_id, department.dept_id, role.role_id
            ):
                done["links_created"] += 1

            local_user_id = row.get("local_user_id")
            if local_user_id is None:
                logger.warning(f"No local user id for '{email}'; identity map not updated")
            elif await central.add_identity(email, department.dept_id, int(local_user_id)):
                done["identities_recorded"] += 1

        return done

    async def run_forever(
        self,
        interval_seconds: float,
        after_cycle: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        """Background loop started at application startup; cancelled at shutdown."""
        logger.info(f"Directory sync scheduled every {interval_seconds}s")
        while True:
            try:
                await self.sync()
                if after_cycle is not None:
                    await after_cycle()
            except Exception:
                logger.exception("Scheduled directory sync cycle failed")
            await asyncio.sleep(interval_seconds)
