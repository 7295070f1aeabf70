import pytest
import sys
import os
import random
import tempfile
import threading
from pathlib import Path
from datetime import datetime, timedelta

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy.exc import OperationalError

from shift_bidding.data_manager import ConcurrencyError, DataManager, NotFoundError, ValidationError
from shift_bidding.models import BidLine, FavoriteLine, LineStatus
from shift_bidding.rank_ledger import LINE_TAKEN_NOTIFICATION, RankLedger, natural_key


@pytest.fixture
def data_manager():
    """Fresh file-backed database per test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as temp_file:
        temp_path = temp_file.name

    dm = DataManager(f"sqlite:///{temp_path}")
    yield dm

    dm.dispose()
    os.unlink(temp_path)


@pytest.fixture
def setup(data_manager):
    """One officer, one operation and ten available lines"""
    user = data_manager.add_user("jdoe", "Jane", "Doe", badge_number="1001")
    operation = data_manager.add_operation("Patrol")
    lines = [data_manager.import_bid_line(str(n), operation.id) for n in range(1, 11)]
    return {"user": user, "operation": operation, "lines": lines}


@pytest.fixture
def ledger(data_manager):
    return RankLedger(data_manager, retry_attempts=3, retry_delay=0)


def test_toggle_appends_at_bottom(ledger, setup):
    user, lines = setup["user"], setup["lines"]

    results = [ledger.toggle_favorite(user.id, line.id) for line in lines[:3]]

    assert [r.favorited for r in results] == [True, True, True]
    assert [r.rank for r in results] == [1, 2, 3]
    assert ledger.ranks(user.id) == [1, 2, 3]


def test_toggle_again_removes_and_closes_gap(ledger, setup):
    user, lines = setup["user"], setup["lines"]
    for line in lines[:4]:
        ledger.toggle_favorite(user.id, line.id)

    result = ledger.toggle_favorite(user.id, lines[1].id)

    assert result.favorited is False
    assert result.rank is None
    assert ledger.ranks(user.id) == [1, 2, 3]
    # Relative order of the survivors is unchanged
    assert [e.bid_line_id for e in ledger.list_favorites(user.id)] == [lines[0].id, lines[2].id, lines[3].id]


def test_random_interleavings_keep_ranks_dense(ledger, setup):
    """
    Why this is important: bidders rely on "my #1 pick" meaning something.
    Any add/remove sequence must leave ranks exactly 1..n with no gaps or
    duplicates.
    """
    user, lines = setup["user"], setup["lines"]
    rng = random.Random(1234)
    favorites = set()

    for _ in range(60):
        line = rng.choice(lines)
        result = ledger.toggle_favorite(user.id, line.id)
        if result.favorited:
            favorites.add(line.id)
        else:
            favorites.discard(line.id)
        assert ledger.ranks(user.id) == list(range(1, len(favorites) + 1))


def test_concurrent_toggles_by_one_user(data_manager, setup):
    """
    Why this is important: a user double-clicking or using two tabs issues
    overlapping toggles. Reading max(rank) outside a serialized transaction
    would hand out the same rank twice.
    """
    user, lines = setup["user"], setup["lines"]
    ledger = RankLedger(data_manager, retry_attempts=5, retry_delay=0.01)
    errors = []
    barrier = threading.Barrier(8)

    def toggle(line_id):
        try:
            barrier.wait()
            ledger.toggle_favorite(user.id, line_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=toggle, args=(line.id,)) for line in lines[:8]]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert ledger.ranks(user.id) == list(range(1, 9))


def test_concurrent_adds_and_removes(data_manager, setup):
    user, lines = setup["user"], setup["lines"]
    ledger = RankLedger(data_manager, retry_attempts=5, retry_delay=0.01)
    for line in lines[:5]:
        ledger.toggle_favorite(user.id, line.id)

    # Remove the first five, add the other five, all at once
    threads = [threading.Thread(target=ledger.toggle_favorite, args=(user.id, line.id)) for line in lines]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.ranks(user.id) == [1, 2, 3, 4, 5]
    assert {e.bid_line_id for e in ledger.list_favorites(user.id)} == {line.id for line in lines[5:]}


def test_users_rank_independently(ledger, data_manager, setup):
    other = data_manager.add_user("asmith", "Alex", "Smith")
    lines = setup["lines"]

    ledger.toggle_favorite(setup["user"].id, lines[0].id)
    ledger.toggle_favorite(other.id, lines[0].id)
    ledger.toggle_favorite(other.id, lines[1].id)

    assert ledger.ranks(setup["user"].id) == [1]
    assert ledger.ranks(other.id) == [1, 2]


def test_unknown_user_or_line(ledger, setup):
    with pytest.raises(NotFoundError):
        ledger.toggle_favorite(999, setup["lines"][0].id)
    with pytest.raises(NotFoundError):
        ledger.toggle_favorite(setup["user"].id, 999)


def test_favoriting_a_taken_line_notifies(ledger, data_manager, setup):
    user, line = setup["user"], setup["lines"][0]
    with data_manager.transaction() as session:
        stored = session.get(BidLine, line.id)
        stored.status = LineStatus.TAKEN.value
        stored.taken_by = "Alex Smith"
        stored.taken_at = datetime(2025, 1, 2, 9, 0)

    result = ledger.toggle_favorite(user.id, line.id)

    assert result.favorited is True
    notifications = data_manager.get_notifications(user.id)
    assert len(notifications) == 1
    assert notifications[0].type == LINE_TAKEN_NOTIFICATION
    assert notifications[0].subject == "Favorited Line Taken"
    assert notifications[0].message == "Line 1 has already been taken"


def test_favoriting_an_available_line_does_not_notify(ledger, data_manager, setup):
    ledger.toggle_favorite(setup["user"].id, setup["lines"][0].id)
    assert data_manager.get_notifications(setup["user"].id) == []


def test_remove_favorite(ledger, setup):
    user, lines = setup["user"], setup["lines"]
    for line in lines[:3]:
        ledger.toggle_favorite(user.id, line.id)

    assert ledger.remove_favorite(user.id, lines[0].id) is True
    assert ledger.remove_favorite(user.id, lines[0].id) is False
    assert ledger.ranks(user.id) == [1, 2]


@pytest.mark.parametrize("source,target,expected", [
    (0, 3, [1, 2, 3, 0]),
    (3, 0, [3, 0, 1, 2]),
    (1, 2, [0, 2, 1, 3]),
    (2, 2, [0, 1, 2, 3]),
])
def test_move_favorite(ledger, setup, source, target, expected):
    user, lines = setup["user"], setup["lines"]
    for line in lines[:4]:
        ledger.toggle_favorite(user.id, line.id)

    ledger.move_favorite(user.id, lines[source].id, target + 1)

    assert [e.bid_line_id for e in ledger.list_favorites(user.id)] == [lines[i].id for i in expected]
    assert ledger.ranks(user.id) == [1, 2, 3, 4]


def test_move_favorite_rejects_bad_rank(ledger, setup):
    user, lines = setup["user"], setup["lines"]
    ledger.toggle_favorite(user.id, lines[0].id)
    ledger.toggle_favorite(user.id, lines[1].id)

    with pytest.raises(ValidationError):
        ledger.move_favorite(user.id, lines[0].id, 3)
    with pytest.raises(ValidationError):
        ledger.move_favorite(user.id, lines[0].id, 0)
    with pytest.raises(NotFoundError):
        ledger.move_favorite(user.id, lines[5].id, 1)


def test_notes_and_filters(ledger, data_manager, setup):
    user, lines = setup["user"], setup["lines"]
    for line in lines[:3]:
        ledger.toggle_favorite(user.id, line.id)
    ledger.update_notes(user.id, lines[1].id, notes="Close to home", tags=["days"])

    with data_manager.transaction() as session:
        stored = session.get(BidLine, lines[2].id)
        stored.status = LineStatus.TAKEN.value
        stored.taken_by = "Alex Smith"
        stored.taken_at = datetime(2025, 1, 2, 9, 0)

    with_notes = ledger.list_favorites(user.id, filter_by="has_notes")
    assert [e.bid_line_id for e in with_notes] == [lines[1].id]
    assert with_notes[0].tags == ["days"]

    assert [e.bid_line_id for e in ledger.list_favorites(user.id, filter_by="taken")] == [lines[2].id]
    assert len(ledger.list_favorites(user.id, filter_by="available")) == 2

    with pytest.raises(NotFoundError):
        ledger.update_notes(user.id, lines[8].id, notes="not a favorite")


def test_sort_by_line_number_is_natural(ledger, setup):
    user, lines = setup["user"], setup["lines"]
    # Lines "10", "2", "1" in rank order
    for index in (9, 1, 0):
        ledger.toggle_favorite(user.id, lines[index].id)

    ordered = ledger.list_favorites(user.id, sort_by="line_number")
    assert [e.line_number for e in ordered] == ["1", "2", "10"]


def test_invalid_list_options(ledger, setup):
    with pytest.raises(ValidationError):
        ledger.list_favorites(setup["user"].id, sort_by="popularity")
    with pytest.raises(ValidationError):
        ledger.list_favorites(setup["user"].id, filter_by="mine")


def test_repair_ranks_renumbers_legacy_data(ledger, data_manager, setup):
    """
    Why this is important: rows written before ranks were kept dense can
    have gaps and duplicates. Repair must keep their relative order and
    break ties by when the favorite was added.
    """
    user, lines = setup["user"], setup["lines"]
    base = datetime(2025, 1, 1, 12, 0)
    with data_manager.transaction() as session:
        session.add_all([
            FavoriteLine(user_id=user.id, bid_line_id=lines[0].id, rank=3, created_at=base),
            FavoriteLine(user_id=user.id, bid_line_id=lines[1].id, rank=3, created_at=base - timedelta(hours=1)),
            FavoriteLine(user_id=user.id, bid_line_id=lines[2].id, rank=7, created_at=base),
            FavoriteLine(user_id=user.id, bid_line_id=lines[3].id, rank=1, created_at=base),
        ])

    repaired = ledger.repair_ranks()

    assert repaired == {user.id: 2}
    assert ledger.ranks(user.id) == [1, 2, 3, 4]
    assert [e.bid_line_id for e in ledger.list_favorites(user.id)] == [
        lines[3].id, lines[1].id, lines[0].id, lines[2].id,
    ]
    assert ledger.repair_ranks(user.id) == {}


def test_retries_exhausted_raise_concurrency_error(ledger, data_manager, setup, monkeypatch):
    attempts = []

    class Locked:
        def __enter__(self):
            attempts.append(1)
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        def __exit__(self, *args):
            return False

    monkeypatch.setattr(data_manager, "transaction", lambda: Locked())

    with pytest.raises(ConcurrencyError):
        ledger.toggle_favorite(setup["user"].id, setup["lines"][0].id)
    assert len(attempts) == 3


def test_natural_key():
    assert sorted(["10", "2", "A1", "1", "A10", "A2"], key=natural_key) == ["1", "2", "10", "A1", "A2", "A10"]
