"""
Tests for snapshot persistence.

Tests:
- Saving and loading account snapshots
- Unreadable and foreign-version files
- Repository reload from a data directory
- Failed snapshot writes leave the records untouched
- Stored records are only changed through the repository
"""

import json
import shutil

import pytest

from ..engine_core.state import Card, ErrorCode
from ..engine_core.transition import StageTransitionEngine
from ..storage import BoardRepository, BoardSnapshotStore
from ..storage.snapshot import SNAPSHOT_VERSION


class TestBoardSnapshotStore:
    """Tests for BoardSnapshotStore."""

    def test_missing_snapshot(self, tmp_path):
        assert BoardSnapshotStore(tmp_path).load("acme") is None

    def test_save_and_load(self, tmp_path):
        store = BoardSnapshotStore(tmp_path)
        store.save("acme", {"stages": [], "cards": [{"card_id": "1"}]})

        data = store.load("acme")

        assert data["version"] == SNAPSHOT_VERSION
        assert data["account_id"] == "acme"
        assert data["cards"] == [{"card_id": "1"}]
        assert store.list_accounts() == ["acme"]

    def test_account_ids_are_safe_file_names(self, tmp_path):
        store = BoardSnapshotStore(tmp_path)
        store.save("../../etc/passwd", {"stages": [], "cards": []})
        assert len(list(tmp_path.iterdir())) == 1
        assert store.load("../../etc/passwd") is not None

    def test_corrupt_file_is_ignored(self, tmp_path):
        store = BoardSnapshotStore(tmp_path)
        store._get_path("acme").write_text("{not json", encoding="utf-8")
        assert store.load("acme") is None

    def test_other_version_is_ignored(self, tmp_path):
        store = BoardSnapshotStore(tmp_path)
        store._get_path("acme").write_text(json.dumps({"version": 99}), encoding="utf-8")
        assert store.load("acme") is None

    def test_delete(self, tmp_path):
        store = BoardSnapshotStore(tmp_path)
        store.save("acme", {"stages": [], "cards": []})
        store.delete("acme")
        assert store.load("acme") is None
        store.delete("acme")


class TestRepositoryPersistence:
    """Tests for BoardRepository with a snapshot store."""

    def test_committed_move_survives_restart(self, tmp_path):
        repository = BoardRepository(snapshot_store=BoardSnapshotStore(tmp_path))
        scope = repository.scoped("acme")
        scope.seed_default_stages("sales")
        scope.add_card(Card(card_id="1", board_key="sales", stage_key="new", position=100.0))

        handle = scope.card_handle("1")
        handle.stage_key = "qualified"
        handle.position = 42.0
        handle.save()

        reopened = BoardRepository(snapshot_store=BoardSnapshotStore(tmp_path)).scoped("acme")
        card = reopened.get_card("1")
        assert (card.stage_key, card.position) == ("qualified", 42.0)
        assert [s.key for s in reopened.stages("sales")][0] == "new"

    def test_new_stage_ids_do_not_collide(self, tmp_path):
        repository = BoardRepository(snapshot_store=BoardSnapshotStore(tmp_path))
        existing = {s.stage_id for s in repository.scoped("acme").seed_default_stages("sales")}

        reopened = BoardRepository(snapshot_store=BoardSnapshotStore(tmp_path)).scoped("acme")
        stage = reopened.add_stage("sales", "won")

        assert stage.stage_id not in existing

    def test_failed_write_leaves_card_unmoved(self, tmp_path, allocator):
        """A move whose snapshot cannot be written reports failure and changes nothing."""
        data_dir = tmp_path / "boards"
        repository = BoardRepository(snapshot_store=BoardSnapshotStore(data_dir))
        scope = repository.scoped("acme")
        scope.seed_default_stages("sales")
        scope.add_card(Card(card_id="1", board_key="sales", stage_key="new", position=100.0))
        shutil.rmtree(data_dir)

        result = StageTransitionEngine(scope=scope, allocator=allocator).transition("1", "qualified")

        assert result.error_code == ErrorCode.TRANSITION_FAILED
        card = scope.get_card("1")
        assert (card.stage_key, card.position) == ("new", 100.0)

    def test_failed_write_leaves_stage_active(self, tmp_path):
        data_dir = tmp_path / "boards"
        repository = BoardRepository(snapshot_store=BoardSnapshotStore(data_dir))
        scope = repository.scoped("acme")
        stage = scope.seed_default_stages("sales")[0]
        shutil.rmtree(data_dir)

        with pytest.raises(OSError):
            scope.set_stage_active(stage.stage_id, False)

        assert scope.get_stage(stage.stage_id).active

    def test_no_temp_files_left_behind(self, tmp_path):
        repository = BoardRepository(snapshot_store=BoardSnapshotStore(tmp_path))
        scope = repository.scoped("acme")
        scope.seed_default_stages("sales")
        scope.add_card(Card(card_id="1", board_key="sales", stage_key="new"))

        assert [p.suffix for p in tmp_path.iterdir()] == [".json"]


class TestRepositoryRecords:
    """Returned records are copies."""

    def test_returned_stage_is_a_copy(self, sales_board):
        stage = sales_board.find_stage("sales", "qualified")
        stage.active = False
        stage.name = "Renamed"

        stored = sales_board.get_stage(stage.stage_id)
        assert stored.active
        assert stored.name == "Qualified"
        assert "qualified" in [s.key for s in sales_board.stages("sales", active_only=True)]

    def test_get_stage_is_a_copy(self, sales_board):
        stage_id = sales_board.find_stage("sales", "new").stage_id
        sales_board.get_stage(stage_id).active = False
        assert sales_board.get_stage(stage_id).active

    def test_set_stage_active_writes_the_stored_stage(self, sales_board):
        stage_id = sales_board.find_stage("sales", "closed").stage_id
        returned = sales_board.set_stage_active(stage_id, False)

        assert not returned.active
        assert not sales_board.get_stage(stage_id).active
