"""Unit tests for VolumeManager."""

from __future__ import annotations

import pytest
from sqlmodel import select

from berth.errors import ConflictError, RecordNotFoundError, ValidationError
from berth.models.activity import ActivityType
from berth.models.volume import ContainerVolume, VolumeRecord
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


class TestEnsure:
    async def test_creates_missing_volume_with_owner_label(
        self, volume_manager, fake_driver, recorder
    ):
        record = await volume_manager.ensure("alice", "cache")

        assert fake_driver.volumes["cache"].labels == {"berth.owner": "alice"}
        assert record.owner == "alice"
        assert record.mountpoint == fake_driver.volumes["cache"].mountpoint

        activities = await recorder.list(target="cache")
        assert [a.type for a in activities] == [ActivityType.VOLUME_CREATE]

    async def test_returns_in_sync_record_unchanged(self, volume_manager, fake_driver, recorder):
        first = await volume_manager.ensure("alice", "cache")

        second = await volume_manager.ensure("alice", "cache")

        assert second.id == first.id
        assert len(fake_driver.calls_to("create_volume")) == 1
        assert len(await recorder.list(target="cache")) == 1

    async def test_recreates_volume_missing_on_runtime(
        self, volume_manager, fake_driver, db_session
    ):
        await _add_record(db_session, "alice", "cache", "/old/mountpoint")

        record = await volume_manager.ensure("alice", "cache")

        assert fake_driver.calls_to("create_volume") == [("create_volume", "cache")]
        assert record.id == "vol-cache"
        assert record.mountpoint == fake_driver.volumes["cache"].mountpoint

    async def test_adopts_unlabelled_runtime_volume(self, volume_manager, fake_driver):
        fake_driver.add_volume("legacy")

        record = await volume_manager.ensure("alice", "legacy")

        assert fake_driver.calls_to("create_volume") == []
        assert record.owner == "alice"

    async def test_rejects_runtime_volume_of_another_owner(self, volume_manager, fake_driver):
        fake_driver.add_volume("theirs", labels={"berth.owner": "bob"})

        with pytest.raises(ConflictError):
            await volume_manager.ensure("alice", "theirs")

    async def test_rejects_name_recorded_for_another_owner(self, volume_manager, db_session):
        await _add_record(db_session, "bob", "shared", "/mnt/shared")

        with pytest.raises(ConflictError):
            await volume_manager.ensure("alice", "shared")

    async def test_rejects_malformed_name(self, volume_manager):
        with pytest.raises(ValidationError):
            await volume_manager.ensure("alice", "../etc")


class TestDelete:
    async def test_deletes_and_tombstones(self, volume_manager, fake_driver, recorder):
        record = await volume_manager.ensure("alice", "cache")
        mountpoint = record.mountpoint

        await volume_manager.delete("alice", "cache")

        assert "cache" not in fake_driver.volumes
        assert record.mountpoint.startswith("DELETED_")
        assert record.mountpoint.endswith(f"_{mountpoint}")
        with pytest.raises(RecordNotFoundError):
            await volume_manager.get("alice", "cache")

        latest = (await recorder.list(target="cache", type=ActivityType.VOLUME_DELETE))[0]
        assert latest.snapshot["previous_mountpoint"] == mountpoint

    async def test_refuses_recorded_mount(self, volume_manager, fake_driver, db_session):
        record = await volume_manager.ensure("alice", "cache")
        db_session.add(ContainerVolume(container_id="ctr-1", volume_id=record.id, mount_path="/c"))
        await db_session.commit()

        with pytest.raises(ConflictError):
            await volume_manager.delete("alice", "cache")

        assert fake_driver.calls_to("remove_volume") == []

    async def test_refuses_runtime_mount(self, volume_manager, fake_driver):
        await volume_manager.ensure("alice", "cache")
        fake_driver.add_container("unmanaged", volumes=["cache"])

        with pytest.raises(ConflictError) as exc_info:
            await volume_manager.delete("alice", "cache")

        assert exc_info.value.details["runtime_containers"] == ["unmanaged"]
        assert "cache" in fake_driver.volumes

    async def test_tolerates_volume_already_gone(self, volume_manager, fake_driver, db_session):
        await volume_manager.ensure("alice", "cache")
        del fake_driver.volumes["cache"]

        await volume_manager.delete("alice", "cache")

        record = (await db_session.execute(select(VolumeRecord))).scalars().one()
        assert record.is_tombstoned()

    async def test_other_owner_cannot_delete(self, volume_manager):
        await volume_manager.ensure("alice", "cache")

        with pytest.raises(RecordNotFoundError):
            await volume_manager.delete("bob", "cache")
