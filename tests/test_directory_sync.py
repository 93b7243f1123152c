import asyncio
from datetime import date, datetime

import pytest

from app.core.security import hash_password, verify_password
from app.models.enums import ROLE_STUDENT
from app.services.directory_sync import DirectorySyncService, format_dob
from app.services.identity_map import IdentityMap
from app.services.role_service import RoleScopeResolver

from conftest import MATH


def pending(email="x@uni.ac", dob="2000-05-03", role="student", department="Mathematics", **extra):
    row = {
        "email": email,
        "date_of_birth": dob,
        "role": role,
        "department": department,
        "first_name": "Xavier",
        "last_name": "Example",
    }
    row.update(extra)
    return row


def counts(registry):
    data = registry.central_data
    return len(data.users), len(data.user_roles), len(data.user_department), len(data.identities)


# ----------------------------------------------------------
# Initial password
# ----------------------------------------------------------
@pytest.mark.parametrize(
    "value, expected",
    [
        ("2000-05-03", "20000503"),
        ("2000-05-03T00:00:00", "20000503"),
        (date(1999, 12, 31), "19991231"),
        (datetime(2001, 1, 2, 10, 30), "20010102"),
        (None, "changeme"),
        ("", "changeme"),
    ],
)
def test_format_dob(value, expected):
    assert format_dob(value) == expected


def test_format_dob_rejects_malformed_dates():
    with pytest.raises(ValueError):
        format_dob("03/05/2000")


# ----------------------------------------------------------
# Provisioning
# ----------------------------------------------------------
@pytest.mark.asyncio
async def test_pending_row_is_provisioned(registry):
    registry.central_data.pending_users = [pending(local_user_id=77)]
    sync = DirectorySyncService(registry)

    report = await sync.sync()

    assert (report.seen, report.created, report.failed) == (1, 1, 0)

    async with registry.central() as central:
        user = await central.get_user_by_email("x@uni.ac")
    assert verify_password("20000503", user.password_hash)
    assert user.password_hash != "20000503"

    principal = await RoleScopeResolver(registry).resolve(user.user_id)
    assert ROLE_STUDENT in principal.role_names()
    assert [(l.dept_id, l.department_name) for l in principal.department_links] == [(MATH, "Mathematics")]

    identity = await IdentityMap(registry).resolve_by_email("x@uni.ac", MATH)
    assert identity.local_user_id == 77


@pytest.mark.asyncio
async def test_second_cycle_is_a_no_op(registry):
    registry.central_data.pending_users = [pending(local_user_id=77)]
    sync = DirectorySyncService(registry, overwrite_existing_passwords=False)

    await sync.sync()
    before = counts(registry)
    hash_before = registry.central_data.users[max(registry.central_data.users)].password_hash

    report = await sync.sync()

    assert counts(registry) == before
    assert registry.central_data.users[max(registry.central_data.users)].password_hash == hash_before
    assert (report.created, report.roles_assigned, report.links_created, report.identities_recorded) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_overwrite_flag_resets_changed_passwords(registry):
    user = registry.add_user("x@uni.ac", password_hash=hash_password("chosen-by-user"))
    registry.central_data.pending_users = [pending()]

    report = await DirectorySyncService(registry, overwrite_existing_passwords=True).sync()

    assert report.passwords_updated == 1
    assert verify_password("20000503", user.password_hash)

    # already matching: not rewritten again
    unchanged = user.password_hash
    report = await DirectorySyncService(registry, overwrite_existing_passwords=True).sync()
    assert report.passwords_updated == 0
    assert user.password_hash == unchanged


@pytest.mark.asyncio
async def test_overwrite_disabled_keeps_existing_password(registry):
    user = registry.add_user("x@uni.ac", password_hash=hash_password("chosen-by-user"))
    registry.central_data.pending_users = [pending()]

    report = await DirectorySyncService(registry, overwrite_existing_passwords=False).sync()

    assert report.passwords_updated == 0
    assert verify_password("chosen-by-user", user.password_hash)
    # role and link are still assigned to the existing user
    principal = await RoleScopeResolver(registry).resolve(user.user_id)
    assert ROLE_STUDENT in principal.role_names()


@pytest.mark.asyncio
async def test_bad_row_does_not_stop_the_cycle(registry):
    registry.central_data.pending_users = [
        pending(email="broken@uni.ac", dob="not-a-date"),
        pending(email="", dob=None),
        pending(email="fine@uni.ac", dob=None),
    ]

    report = await DirectorySyncService(registry).sync()

    assert report.seen == 3
    assert report.failed == 2
    assert report.created == 1
    async with registry.central() as central:
        assert await central.get_user_by_email("broken@uni.ac") is None
        fine = await central.get_user_by_email("fine@uni.ac")
    assert verify_password("changeme", fine.password_hash)


@pytest.mark.asyncio
async def test_unknown_role_and_department_are_skipped(registry):
    registry.central_data.pending_users = [pending(role="wizard", department="Alchemy", dob=None)]

    report = await DirectorySyncService(registry).sync()

    assert report.created == 1
    assert report.failed == 0
    assert report.roles_assigned == 0
    assert report.links_created == 0



@pytest.mark.asyncio
async def test_identity_email_is_stored_lower_case(registry):
    registry.central_data.pending_users = [
        pending(email="X@Uni.ac ", dob=None, local_user_id=77),
        pending(email="x@uni.ac", dob=None, local_user_id=78),
    ]

    report = await DirectorySyncService(registry).sync()

    assert (report.created, report.identities_recorded, report.failed) == (1, 1, 0)
    mapped = [(m.university_email, m.local_user_id) for m in registry.central_data.identities if m.dept_id == MATH]
    assert ("x@uni.ac", 77) in mapped
    assert all(local != 78 for _, local in mapped)
    assert [u.email for u in registry.central_data.users.values() if u.email.lower() == "x@uni.ac"] == ["x@uni.ac"]

    identity = await IdentityMap(registry).resolve_by_email("X@UNI.AC")
    assert identity.local_user_id == 77


@pytest.mark.asyncio
async def test_rolled_back_row_is_not_counted(registry):
    # user, role and link are written before the bad local id aborts the row
    registry.central_data.pending_users = [pending(dob=None, local_user_id="not-a-number")]
    before = counts(registry)

    report = await DirectorySyncService(registry).sync()

    assert (report.created, report.roles_assigned, report.links_created) == (0, 0, 0)
    assert report.failed == 1
    assert counts(registry) == before
    async with registry.central() as central:
        assert await central.get_user_by_email("x@uni.ac") is None


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped(registry):
    registry.central_data.pending_users = [pending(dob=None)]
    sync = DirectorySyncService(registry)

    async with sync._lock:
        assert sync.running
        report = await sync.sync()

    assert report.skipped is True
    assert len(registry.central_data.users) == 5


@pytest.mark.asyncio
async def test_run_forever_runs_sync_then_after_cycle(registry, monkeypatch):
    calls = []

    class Recorder(DirectorySyncService):
        async def sync(self):
            calls.append("sync")

    async def after_cycle():
        calls.append("reconcile")

    async def stop(_seconds):
        raise asyncio.CancelledError()

    monkeypatch.setattr("app.services.directory_sync.asyncio.sleep", stop)

    with pytest.raises(asyncio.CancelledError):
        await Recorder(registry).run_forever(60, after_cycle=after_cycle)

    assert calls == ["sync", "reconcile"]


@pytest.mark.asyncio
async def test_failed_cycle_keeps_the_loop_alive(registry, monkeypatch):
    attempts = []

    class Flaky(DirectorySyncService):
        async def sync(self):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("central view unavailable")

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise asyncio.CancelledError()

    monkeypatch.setattr("app.services.directory_sync.asyncio.sleep", fake_sleep)

    with pytest.raises(asyncio.CancelledError):
        await Flaky(registry).run_forever(5)

    assert len(attempts) == 2
    assert sleeps == [5, 5]
