"""Unit tests for VolumeReconciler.

Covers the diff, the refresh of container mount associations, the guard,
fail-open behaviour on an unreachable runtime and idempotency of a second pass.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlmodel import select

from berth.errors import ReconciliationInProgressError, RuntimeUnreachableError
from berth.models.activity import ActivityType
from berth.models.container import ContainerRecord
from berth.models.volume import ContainerVolume, VolumeRecord
from berth.services.volumes import VolumeOwner
from berth.utils.datetime import utcnow


async def _add_record(db_session, owner: str, name: str, mountpoint: str) -> VolumeRecord:
    record = VolumeRecord(
        id=f"vol-{name}",
        owner=owner,
        name=name,
        mountpoint=mountpoint,
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    db_session.add(record)
    await db_session.commit()
    return record


async def _records(db_session) -> dict[str, VolumeRecord]:
    result = await db_session.execute(select(VolumeRecord))
    return {r.name: r for r in result.scalars().all()}


class TestReconcile:
    async def test_tombstones_orphan_record(self, reconciler, db_session, recorder):
        await _add_record(db_session, "alice", "orphan", "/var/lib/docker/volumes/orphan/_data")

        volumes = await reconciler.reconcile("alice")

        assert volumes == []
        record = (await _records(db_session))["orphan"]
        assert record.mountpoint.startswith("DELETED_")
        assert record.mountpoint.endswith("_/var/lib/docker/volumes/orphan/_data")

        activities = await recorder.list(target="orphan")
        assert [a.type for a in activities] == [ActivityType.VOLUME_DELETE]

    async def test_never_removes_mounted_record(self, reconciler, db_session):
        record = await _add_record(db_session, "alice", "mounted", "/mnt/mounted")
        db_session.add(ContainerVolume(container_id="ctr-1", volume_id=record.id, mount_path="/d"))
        await db_session.commit()

        report = await reconciler.run_pass("alice")

        assert report.plan.to_remove == []
        assert [v.record.name for v in report.volumes] == ["mounted"]
        assert report.volumes[0].exists_in_docker is False
        assert report.volumes[0].mounts[0].mount_path == "/d"

    async def test_updates_changed_mountpoint(self, reconciler, fake_driver, db_session, recorder):
        await _add_record(db_session, "alice", "data", "/old")
        fake_driver.add_volume("data", mountpoint="/new")

        volumes = await reconciler.reconcile("alice")

        assert volumes[0].record.mountpoint == "/new"
        assert volumes[0].exists_in_docker is True
        activity = (await recorder.list(target="data"))[0]
        assert activity.type == ActivityType.VOLUME_UPDATE
        assert activity.snapshot["previous_mountpoint"] == "/old"

    async def test_adopts_unowned_and_own_runtime_volumes(self, reconciler, fake_driver, db_session):
        fake_driver.add_volume("unlabelled")
        fake_driver.add_volume("mine", labels={"berth.owner": "alice"})
        fake_driver.add_volume("theirs", labels={"berth.owner": "bob"})
        fake_driver.add_volume("garbled", labels={"berth.owner": "not a valid owner!"})

        volumes = await reconciler.reconcile("alice")

        assert sorted(v.record.name for v in volumes) == ["mine", "unlabelled"]
        assert set(await _records(db_session)) == {"mine", "unlabelled"}

    async def test_skips_names_recorded_for_another_owner(
        self, reconciler, fake_driver, db_session
    ):
        await _add_record(db_session, "bob", "shared", "/var/lib/docker/volumes/shared/_data")
        fake_driver.add_volume("shared")

        volumes = await reconciler.reconcile("alice")

        assert volumes == []
        assert (await _records(db_session))["shared"].owner == "bob"

    async def test_second_pass_is_a_noop(self, reconciler, fake_driver, db_session):
        await _add_record(db_session, "alice", "orphan", "/mnt/orphan")
        await _add_record(db_session, "alice", "moved", "/old")
        fake_driver.add_volume("moved", mountpoint="/new")
        fake_driver.add_volume("fresh")

        first = await reconciler.run_pass("alice")
        second = await reconciler.run_pass("alice")

        assert first.mutations == 3
        assert second.mutations == 0
        assert second.plan.is_empty
        assert [v.record.name for v in first.volumes] == [v.record.name for v in second.volumes]

    async def test_revives_tombstoned_record_when_volume_returns(
        self, reconciler, fake_driver, db_session
    ):
        await _add_record(db_session, "alice", "back", "/mnt/back")
        await reconciler.reconcile("alice")
        fake_driver.add_volume("back", mountpoint="/mnt/back")

        volumes = await reconciler.reconcile("alice")

        assert [v.record.mountpoint for v in volumes] == ["/mnt/back"]

    async def test_fails_open_when_runtime_unreachable(
        self, reconciler, fake_driver, db_session, recorder
    ):
        await _add_record(db_session, "alice", "data", "/mnt/data")
        fake_driver.fail("list_volumes", RuntimeUnreachableError("connection refused"))

        report = await reconciler.run_pass("alice")

        assert report.runtime_reachable is False
        assert [(v.record.name, v.exists_in_docker) for v in report.volumes] == [("data", False)]
        assert (await _records(db_session))["data"].mountpoint == "/mnt/data"
        assert await recorder.list() == []


async def _add_container(db_session, fake_driver, name: str, volumes: list[str]) -> ContainerRecord:
    runtime = fake_driver.add_container(name, volumes=volumes)
    record = ContainerRecord(
        id=f"ctr-{name}",
        owner="alice",
        name=name,
        subdomain=name,
        runtime_id=runtime.runtime_id,
    )
    db_session.add(record)
    await db_session.commit()
    return record


async def _mounts(db_session) -> list[tuple[str, str, str]]:
    result = await db_session.execute(select(ContainerVolume))
    return sorted((m.container_id, m.volume_id, m.mount_path) for m in result.scalars().all())


class TestMountAssociations:
    async def test_records_runtime_mounts(
        self, reconciler, fake_driver, db_session, recorder
    ):
        await _add_record(db_session, "alice", "data", "/var/lib/docker/volumes/data/_data")
        fake_driver.add_volume("data")
        await _add_container(db_session, fake_driver, "app", ["data"])

        report = await reconciler.run_pass("alice")

        assert [r.record.name for r in report.plan.to_relink] == ["data"]
        assert await _mounts(db_session) == [("ctr-app", "vol-data", "/data/data")]
        assert [m.container_id for m in report.volumes[0].mounts] == ["ctr-app"]

        activity = (await recorder.list(target="data", type=ActivityType.VOLUME_UPDATE))[0]
        assert activity.snapshot["previous_mounts"] == []
        assert activity.snapshot["mounts"] == [
            {"container_id": "ctr-app", "mount_path": "/data/data"}
        ]

        second = await reconciler.run_pass("alice")
        assert second.plan.is_empty

    async def test_replaces_stale_mounts(self, reconciler, fake_driver, db_session):
        record = await _add_record(db_session, "alice", "data", "/var/lib/docker/volumes/data/_data")
        fake_driver.add_volume("data")
        await _add_container(db_session, fake_driver, "app", ["data"])
        db_session.add(ContainerVolume(container_id="ctr-app", volume_id=record.id, mount_path="/old"))
        await db_session.commit()

        await reconciler.reconcile("alice")

        assert await _mounts(db_session) == [("ctr-app", "vol-data", "/data/data")]

    async def test_drops_mounts_of_containers_no_longer_mounting(
        self, reconciler, fake_driver, db_session
    ):
        record = await _add_record(db_session, "alice", "data", "/var/lib/docker/volumes/data/_data")
        fake_driver.add_volume("data")
        await _add_container(db_session, fake_driver, "app", [])
        db_session.add(ContainerVolume(container_id="ctr-app", volume_id=record.id, mount_path="/d"))
        await db_session.commit()

        volumes = await reconciler.reconcile("alice")

        assert await _mounts(db_session) == []
        assert volumes[0].mounts == []

    async def test_adopted_volume_keeps_runtime_mounts(self, reconciler, fake_driver, db_session):
        fake_driver.add_volume("cache")
        await _add_container(db_session, fake_driver, "worker", ["cache"])

        report = await reconciler.run_pass("alice")

        assert [v.name for v in report.plan.to_add] == ["cache"]
        assert [(m.container_id, m.mount_path) for m in report.volumes[0].mounts] == [
            ("ctr-worker", "/data/cache")
        ]

    async def test_ignores_containers_without_record(self, reconciler, fake_driver, db_session):
        await _add_record(db_session, "alice", "data", "/var/lib/docker/volumes/data/_data")
        fake_driver.add_volume("data")
        fake_driver.add_container("stray", volumes=["data"])

        report = await reconciler.run_pass("alice")

        assert report.plan.is_empty
        assert await _mounts(db_session) == []

    async def test_refreshed_mount_protects_vanished_volume(
        self, reconciler, fake_driver, db_session
    ):
        await _add_record(db_session, "alice", "data", "/var/lib/docker/volumes/data/_data")
        fake_driver.add_volume("data")
        await _add_container(db_session, fake_driver, "app", ["data"])
        await reconciler.reconcile("alice")
        del fake_driver.volumes["data"]

        report = await reconciler.run_pass("alice")

        assert report.plan.to_remove == []
        assert not (await _records(db_session))["data"].is_tombstoned()


class TestGuard:
    async def test_rejects_concurrent_pass(self, reconciler, guard):
        async with guard.hold("bob"):
            with pytest.raises(ReconciliationInProgressError) as exc_info:
                await reconciler.reconcile("alice")

        assert exc_info.value.details == {"owner": "alice", "holder": "bob"}

    async def test_force_bypasses_guard(self, reconciler, guard, fake_driver):
        fake_driver.add_volume("data")

        async with guard.hold("bob"):
            volumes = await reconciler.reconcile("alice", force=True)

        assert [v.record.name for v in volumes] == ["data"]

    async def test_unforced_pass_rejected_during_forced_pass(
        self, reconciler, guard, fake_driver
    ):
        fake_driver.add_volume("data")
        listing = asyncio.Event()
        release = asyncio.Event()
        list_volumes = fake_driver.list_volumes

        async def slow_list_volumes():
            listing.set()
            await release.wait()
            return await list_volumes()

        fake_driver.list_volumes = slow_list_volumes

        task = asyncio.create_task(reconciler.reconcile("alice", force=True))
        await listing.wait()

        assert guard.locked
        with pytest.raises(ReconciliationInProgressError):
            await reconciler.reconcile("bob")

        release.set()
        volumes = await task

        assert [v.record.name for v in volumes] == ["data"]
        assert not guard.locked

    async def test_guard_released_after_pass(self, reconciler, guard):
        await reconciler.reconcile("alice")

        assert not guard.locked


class TestPlan:
    async def test_plan_is_pure(self, reconciler, fake_driver):
        owner = VolumeOwner("alice")
        records = [
            VolumeRecord(id="vol-1", owner="alice", name="gone", mountpoint="/a"),
            VolumeRecord(id="vol-2", owner="alice", name="busy", mountpoint="/b"),
            VolumeRecord(id="vol-3", owner="alice", name="dead", mountpoint="DELETED_x_/c"),
        ]
        mounts = {"vol-2": [ContainerVolume(container_id="c", volume_id="vol-2", mount_path="/m")]}
        runtime = [fake_driver.add_volume("new")]

        plan = reconciler.plan(owner, records, mounts, runtime)

        assert plan.summary() == {"to_remove": ["gone"], "to_update": [], "to_add": ["new"]}
        assert fake_driver.calls == []
