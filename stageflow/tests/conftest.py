"""
Pytest fixtures for Stageflow tests.
"""

import pytest

from ..api.service import BoardService
from ..broadcast import AccountChannel, InMemoryBroadcastChannel
from ..config import Settings
from ..engine_core.allocator import PositionAllocator
from ..engine_core.state import Card
from ..engine_core.transition import StageTransitionEngine
from ..storage import BoardRepository


class FakeClock:
    """Controllable wall clock (seconds)."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def allocator(clock) -> PositionAllocator:
    """Allocator on the fake clock."""
    return PositionAllocator(clock=clock)


@pytest.fixture
def repository() -> BoardRepository:
    return BoardRepository()


@pytest.fixture
def scope(repository):
    """Account 'acme' with the default stages on the 'sales' board."""
    scope = repository.scoped("acme")
    scope.seed_default_stages("sales")
    return scope


@pytest.fixture
def sales_board(scope):
    """
    Board with cards:
        new:       1 (100), 2 (200)
        qualified: 3 (1000), 4 (2000)
        proposal:  (empty)
    """
    scope.add_card(Card(card_id="1", board_key="sales", stage_key="new", position=100.0))
    scope.add_card(Card(card_id="2", board_key="sales", stage_key="new", position=200.0))
    scope.add_card(Card(card_id="3", board_key="sales", stage_key="qualified", position=1000.0))
    scope.add_card(Card(card_id="4", board_key="sales", stage_key="qualified", position=2000.0))
    return scope


@pytest.fixture
def channel() -> InMemoryBroadcastChannel:
    return InMemoryBroadcastChannel()


@pytest.fixture
def engine(sales_board, channel, allocator) -> StageTransitionEngine:
    return StageTransitionEngine(
        scope=sales_board,
        channel=AccountChannel(channel, "acme"),
        allocator=allocator,
    )


@pytest.fixture
def service(repository, channel, allocator, sales_board) -> BoardService:
    """Service over the seeded repository."""
    return BoardService(
        repository=repository,
        channel=channel,
        settings=Settings(),
        allocator=allocator,
    )
