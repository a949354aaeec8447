"""
Tests for the stage transition engine.

Tests:
- Committed stage + position for each directive kind
- Not-found and inactive-stage rejections leave the card untouched
- Storage rejections and unexpected failures
- Broadcast on commit
- Stage deactivation and card migration
"""

import pytest

from ..broadcast import AccountChannel
from ..engine_core.allocator import PositionAllocator
from ..engine_core.state import Card, ErrorCode, PositionDirective, TransitionRequest
from ..engine_core.transition import (
    LAST_ACTIVE_STAGE_MESSAGE,
    TRANSITION_FAILED_MESSAGE,
    StageTransitionEngine,
)
from ..storage.errors import RecordInvalid


class TestTransition:
    """Tests for StageTransitionEngine.transition."""

    def test_move_between_neighbours(self, engine, sales_board):
        """Card lands at the midpoint and both fields are written."""
        result = engine.transition("3", "new", PositionDirective.between("1", "2"))

        assert result.success
        assert result.committed.new_stage_key == "new"
        assert result.committed.new_position == 150.0

        card = sales_board.get_card("3")
        assert card.stage_key == "new"
        assert card.position == 150.0

    def test_move_after_last(self, engine):
        result = engine.transition("3", "new", PositionDirective.between(after_id="2"))
        assert result.committed.new_position == 1200.0

    def test_move_into_empty_stage_appends(self, engine, clock):
        result = engine.transition("1", "proposal")
        assert result.success
        assert result.committed.new_position == clock.now * 1000.0

    def test_appends_are_strictly_increasing(self, engine):
        first = engine.transition("1", "proposal").committed.new_position
        second = engine.transition("2", "proposal").committed.new_position
        assert second > first

    def test_reorder_within_stage_ignores_self(self, engine):
        """A card used as its own neighbour does not resolve."""
        result = engine.transition("1", "new", PositionDirective.between(after_id="1", before_id="2"))
        assert result.committed.new_position == 200.0 - 1000.0

    def test_stale_neighbour_is_ignored(self, engine, sales_board):
        """A neighbour that moved elsewhere counts as absent."""
        sales_board.remove_card("2")
        result = engine.transition("3", "new", PositionDirective.between("1", "2"))
        assert result.success
        assert result.committed.new_position == 1100.0

    def test_neighbour_in_other_stage_is_ignored(self, engine):
        result = engine.transition("1", "proposal", PositionDirective.between(after_id="3"))
        assert result.success
        assert result.committed.new_position != 2000.0

    def test_absolute_position(self, engine):
        result = engine.transition("1", "qualified", PositionDirective.at(1500.0))
        assert result.committed.new_position == 1500.0

    def test_returns_full_card(self, engine, sales_board):
        sales_board.set_unread("1", 3)
        result = engine.transition("1", "qualified")
        assert result.committed.card.card_id == "1"
        assert result.committed.card.unread_count == 3

    def test_apply_request(self, engine):
        request = TransitionRequest(card_id=3, target_stage_key="new")
        result = engine.apply(request)
        assert result.success
        assert result.committed.card_id == "3"


class TestTransitionErrors:
    """Rejected transitions change nothing."""

    def test_unknown_card(self, engine):
        result = engine.transition("999", "new")
        assert not result.success
        assert result.error_code == ErrorCode.NOT_FOUND
        assert result.details == {"card_id": "999"}

    def test_card_from_other_board(self, engine, sales_board):
        sales_board.seed_default_stages("support")
        sales_board.add_card(Card(card_id="50", board_key="support", stage_key="new", position=1.0))
        result = engine.transition("50", "qualified", board_key="sales")
        assert result.error_code == ErrorCode.NOT_FOUND
        assert sales_board.get_card("50").stage_key == "new"

    def test_card_from_other_account(self, engine, repository):
        other = repository.scoped("globex")
        other.seed_default_stages("sales")
        other.add_card(Card(card_id="77", board_key="sales", stage_key="new"))
        result = engine.transition("77", "qualified")
        assert result.error_code == ErrorCode.NOT_FOUND
        assert other.get_card("77").stage_key == "new"

    def test_unknown_stage_lists_available(self, engine, sales_board):
        result = engine.transition("1", "won")
        assert result.error_code == ErrorCode.NOT_FOUND
        assert result.details["stage_key"] == "won"
        assert result.details["available_stages"] == [
            "new", "qualified", "proposal", "negotiation", "closed",
        ]
        card = sales_board.get_card("1")
        assert (card.stage_key, card.position) == ("new", 100.0)

    def test_inactive_stage_is_not_a_target(self, engine, sales_board):
        stage = sales_board.find_stage("sales", "closed")
        sales_board.set_stage_active(stage.stage_id, False)

        result = engine.transition("1", "closed")

        assert result.error_code == ErrorCode.NOT_FOUND
        assert "closed" not in result.details["available_stages"]
        assert sales_board.get_card("1").stage_key == "new"

    def test_stage_deactivated_mid_move(self, sales_board, channel, clock):
        """A stage deactivated after lookup but before save never receives the card."""

        class DeactivatingAllocator(PositionAllocator):
            def allocate(self, neighbours, directive):
                position = super().allocate(neighbours, directive)
                engine.deactivate_stage(sales_board.find_stage("sales", "qualified").stage_id)
                return position

        engine = StageTransitionEngine(
            scope=sales_board,
            channel=AccountChannel(channel, "acme"),
            allocator=DeactivatingAllocator(clock=clock),
        )
        result = engine.transition("1", "qualified")

        assert result.error_code == ErrorCode.NOT_FOUND
        assert "qualified" not in result.details["available_stages"]
        card = sales_board.get_card("1")
        assert (card.stage_key, card.position) == ("new", 100.0)
        assert not sales_board.cards_in_stage("sales", "qualified")

    def test_non_finite_position_is_invalid(self, engine, sales_board):
        result = engine.transition("1", "qualified", PositionDirective.at(float("nan")))
        assert result.error_code == ErrorCode.INVALID_TRANSITION
        card = sales_board.get_card("1")
        assert (card.stage_key, card.position) == ("new", 100.0)

    def test_storage_rejection(self, engine, monkeypatch):
        def reject(scope, handle):
            raise RecordInvalid("Stage is locked")

        monkeypatch.setattr(type(engine.scope), "_commit", reject)
        result = engine.transition("1", "qualified")
        assert result.error_code == ErrorCode.INVALID_TRANSITION
        assert result.error == "Stage is locked"

    def test_unexpected_failure_has_stable_message(self, engine, monkeypatch, caplog):
        def explode(scope, handle):
            raise RuntimeError("disk on fire at /var/lib/secret")

        monkeypatch.setattr(type(engine.scope), "_commit", explode)
        result = engine.transition("1", "qualified")

        assert result.error_code == ErrorCode.TRANSITION_FAILED
        assert result.error == TRANSITION_FAILED_MESSAGE
        assert "secret" not in result.error
        assert "card=1" in caplog.text

    def test_rejection_publishes_nothing(self, engine, channel):
        sub = AccountChannel(channel, "acme").subscribe("sales")
        engine.transition("1", "won")
        assert sub.pending() == 0


class TestTransitionBroadcast:
    """Committed moves are published on the board."""

    def test_publishes_card_moved(self, engine, channel):
        sub = AccountChannel(channel, "acme").subscribe("sales")
        engine.transition("3", "new", PositionDirective.between("1", "2"))
        assert sub.get_nowait() == {
            "event": "card_moved",
            "card_id": "3",
            "stage_key": "new",
            "position": 150.0,
        }

    def test_other_account_does_not_hear(self, engine, channel):
        sub = AccountChannel(channel, "globex").subscribe("sales")
        engine.transition("3", "new")
        assert sub.pending() == 0

    def test_publish_failure_keeps_commit(self, sales_board, allocator):
        class BrokenChannel:
            def publish(self, board_key, event):
                raise ConnectionError("down")

        engine = StageTransitionEngine(scope=sales_board, channel=BrokenChannel(), allocator=allocator)
        result = engine.transition("1", "qualified")
        assert result.success
        assert sales_board.get_card("1").stage_key == "qualified"

    def test_runs_without_channel(self, sales_board, allocator):
        engine = StageTransitionEngine(scope=sales_board, allocator=allocator)
        assert engine.transition("1", "qualified").success


class TestDeactivateStage:
    """Tests for stage deactivation."""

    def test_cards_move_to_first_active_stage(self, engine, sales_board):
        stage = sales_board.find_stage("sales", "qualified")
        result = engine.deactivate_stage(stage.stage_id)

        assert result.success
        assert result.fallback_stage_key == "new"
        assert sorted(result.migrated_card_ids) == ["3", "4"]
        card = sales_board.get_card("3")
        assert (card.stage_key, card.position) == ("new", 1000.0)
        assert not sales_board.get_stage(stage.stage_id).active

    def test_first_stage_falls_back_to_next(self, engine, sales_board):
        stage = sales_board.find_stage("sales", "new")
        result = engine.deactivate_stage(stage.stage_id)
        assert result.fallback_stage_key == "qualified"
        assert sales_board.get_card("1").stage_key == "qualified"

    def test_last_active_stage_is_refused(self, engine, sales_board):
        stages = sales_board.stages("sales", active_only=True)
        for stage in stages[1:]:
            assert engine.deactivate_stage(stage.stage_id).success

        result = engine.deactivate_stage(stages[0].stage_id)

        assert not result.success
        assert result.error_code == ErrorCode.INVALID
        assert result.error == LAST_ACTIVE_STAGE_MESSAGE
        assert sales_board.get_stage(stages[0].stage_id).active

    def test_already_inactive(self, engine, sales_board):
        stage = sales_board.find_stage("sales", "proposal")
        engine.deactivate_stage(stage.stage_id)
        result = engine.deactivate_stage(stage.stage_id)
        assert result.success
        assert result.migrated_card_ids == []

    def test_unknown_stage(self, engine):
        result = engine.deactivate_stage("9999")
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_publishes_stage_deactivated(self, engine, sales_board, channel):
        sub = AccountChannel(channel, "acme").subscribe("sales")
        stage = sales_board.find_stage("sales", "qualified")
        engine.deactivate_stage(stage.stage_id)
        assert sub.get_nowait() == {
            "event": "stage_deactivated",
            "stage_key": "qualified",
            "fallback_stage_key": "new",
        }
