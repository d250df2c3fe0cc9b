"""
Tests for the migration runner.

Migrations run against the in-memory database and are rolled back through
the default `down`, which replays the undo log.
"""

from typing import Any, Dict

import pytest

from mongo_auto_rollback.database import DatabaseManager, MigrationDatabase
from mongo_auto_rollback.migrations import BaseMigration, MigrationError, MigrationManager


class AddUsersMigration(BaseMigration):
    """Seed users and activate adults."""

    @property
    def name(self) -> str:
        return "add_users"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def up(self, db: MigrationDatabase) -> Dict[str, Any]:
        users = db.get_collection("users")
        await users.insert_many([{"_id": "u1", "age": 30}, {"_id": "u2", "age": 15}])
        await users.update_many({"age": {"$gte": 18}}, {"$set": {"active": True}})
        await users.delete_one({"_id": "legacy"})
        return {"inserted": 2}


class BrokenMigration(AddUsersMigration):
    @property
    def name(self) -> str:
        return "broken"

    async def up(self, db: MigrationDatabase) -> Dict[str, Any]:
        await db["users"].delete_one({"_id": "legacy"})
        raise ValueError("boom")


class UntrackedMigration(AddUsersMigration):
    auto_rollback = False

    @property
    def name(self) -> str:
        return "untracked"

    async def up(self, db: MigrationDatabase) -> Dict[str, Any]:
        await db["users"].update_one({"_id": "legacy"}, {"$set": {"archived": True}})
        return {}


@pytest.fixture
def legacy_users(fake_db):
    users = fake_db.get_collection("users")
    users.documents.append({"_id": "legacy", "age": 70})
    return users


@pytest.fixture
def migrations(fake_db, config):
    manager = DatabaseManager(config)
    manager.database = fake_db
    return MigrationManager(manager)


async def test_run_migration_records_changelog(migrations, fake_db, legacy_users, undo_collection):
    result = await migrations.run_migration(AddUsersMigration())

    assert result["status"] == "completed"
    assert result["migration_id"] == "add_users@1.0.0"
    assert result["result"] == {"inserted": 2}
    assert result["undo_records"] == 4
    assert len(undo_collection.documents) == 4

    entry = fake_db.get_collection("changelog").documents[0]
    assert entry["status"] == "completed"
    assert entry["description"] == "Seed users and activate adults."
    assert entry["undo_records"] == 4


async def test_completed_migration_is_skipped(migrations, legacy_users):
    await migrations.run_migration(AddUsersMigration())

    result = await migrations.run_migration(AddUsersMigration())

    assert result["status"] == "skipped"


async def test_rollback_via_default_down_restores_collection(migrations, fake_db, legacy_users, undo_collection):
    before = legacy_users.contents()
    await migrations.run_migration(AddUsersMigration())

    result = await migrations.rollback_migration(AddUsersMigration())

    assert result["status"] == "rolled_back"
    assert result["result"]["operations_replayed"] == 4
    assert legacy_users.contents() == before
    assert undo_collection.documents == []
    assert fake_db.get_collection("changelog").documents[0]["status"] == "rolled_back"


async def test_failed_migration_keeps_partial_writes_rollbackable(migrations, fake_db, legacy_users):
    before = legacy_users.contents()

    with pytest.raises(MigrationError) as exc_info:
        await migrations.run_migration(BrokenMigration())

    assert isinstance(exc_info.value.original_error, ValueError)
    entry = fake_db.get_collection("changelog").documents[0]
    assert entry["status"] == "failed"
    assert entry["error_message"] == "boom"

    await migrations.rollback_migration(BrokenMigration())

    assert legacy_users.contents() == before


async def test_rollback_of_unknown_migration_fails(migrations):
    with pytest.raises(MigrationError):
        await migrations.rollback_migration(AddUsersMigration())


async def test_rollback_twice_fails(migrations, legacy_users):
    await migrations.run_migration(AddUsersMigration())
    await migrations.rollback_migration(AddUsersMigration())

    with pytest.raises(MigrationError) as exc_info:
        await migrations.rollback_migration(AddUsersMigration())

    assert "rolled_back" in str(exc_info.value)


async def test_migration_without_auto_rollback_is_not_logged(migrations, legacy_users, undo_collection):
    result = await migrations.run_migration(UntrackedMigration())

    assert result["undo_records"] == 0
    assert undo_collection.documents == []


async def test_migration_history_hides_ids(migrations, legacy_users):
    await migrations.run_migration(AddUsersMigration())
    await migrations.run_migration(UntrackedMigration())

    history = await migrations.get_migration_history()

    assert {entry["migration_id"] for entry in history} == {"add_users@1.0.0", "untracked@1.0.0"}
    assert all("_id" not in entry for entry in history)
