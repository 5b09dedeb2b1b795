from datetime import datetime

import pytest

from errors import PermissionDeniedError
from schemas import GOALS, LEADERBOARD_SETTINGS_ID, SETTINGS, Countdown


def approved_goal(store, apprentice, rating, approved_at, approved=True):
    return store.add(GOALS, {
        "title": f"Goal rated {rating}",
        "apprentice_id": apprentice["id"],
        "apprentice_name": apprentice["first_name"],
        "submitted": True,
        "approved": approved,
        "approved_at": approved_at if approved else None,
        "rating": rating,
        "comments": [],
    })


def standing(standings, user):
    return next(s for s in standings if s["apprentice_id"] == user["id"])


def test_totals_and_averages(services, make_user, store):
    ada, ben, cy = make_user(first_name="Ada"), make_user(first_name="Ben"), make_user(first_name="Cy")
    make_user("supervisor")
    approved_goal(store, ada, 4, datetime(2026, 3, 1))
    approved_goal(store, ada, 3.5, datetime(2026, 3, 2))
    approved_goal(store, ben, 5, datetime(2026, 3, 3))
    approved_goal(store, ben, 5, datetime(2026, 3, 3), approved=False)

    standings = services.leaderboard.compute()
    assert [s["name"] for s in standings] == ["Ada Test", "Ben Test", "Cy Test"]
    assert standing(standings, ada)["total_rating"] == 7.5
    assert standing(standings, ada)["average_rating"] == 3.75
    assert standing(standings, ben)["approved_goal_count"] == 1
    assert standing(standings, cy)["average_rating"] == 0
    assert services.leaderboard.champion(standings)["apprentice_id"] == ada["id"]


def test_supervisors_are_not_ranked(services, make_user):
    make_user("supervisor")
    assert services.leaderboard.compute() == []
    assert services.leaderboard.champion([]) is None


def test_ties_keep_read_order(services, make_user, store):
    first, second = make_user(), make_user()
    approved_goal(store, first, 3, datetime(2026, 3, 1))
    approved_goal(store, second, 3, datetime(2026, 3, 1))
    standings = services.leaderboard.compute()
    assert [s["apprentice_id"] for s in standings] == [first["id"], second["id"]]


def test_reset_excludes_earlier_approvals(services, make_user, store):
    apprentice = make_user()
    supervisor = make_user("supervisor")
    old_goal = approved_goal(store, apprentice, 5, datetime(2020, 1, 1))

    services.leaderboard.reset(supervisor)
    reset_at = services.leaderboard.reset_timestamp()
    assert reset_at is not None

    approved_goal(store, apprentice, 2, datetime(2099, 1, 1))
    standings = services.leaderboard.compute()
    assert standing(standings, apprentice)["total_rating"] == 2
    assert standing(standings, apprentice)["approved_goal_count"] == 1
    # the goal itself is untouched
    assert store.get(GOALS, old_goal)["rating"] == 5


def test_reset_requires_supervisor(services, make_user):
    with pytest.raises(PermissionDeniedError):
        services.leaderboard.reset(make_user())


def test_countdown_settings_survive_reset(services, make_user, store):
    supervisor = make_user("supervisor")
    countdown = Countdown(title="Apprentice of the Year", end_date=datetime(2026, 12, 31))
    services.leaderboard.update_countdown(supervisor, countdown)
    services.leaderboard.reset(supervisor)
    settings = services.leaderboard.get_settings()
    assert settings["countdown"]["title"] == "Apprentice of the Year"
    assert settings["leaderboard_reset_timestamp"] is not None

    services.leaderboard.clear_countdown(supervisor)
    assert store.get(SETTINGS, LEADERBOARD_SETTINGS_ID)["countdown"] is None


def test_rank_of_is_one_based(services, make_user, store):
    first, second, unranked = make_user(), make_user(), make_user("supervisor")
    approved_goal(store, first, 5, datetime(2026, 3, 1))
    approved_goal(store, second, 1, datetime(2026, 3, 1))
    standings = services.leaderboard.compute()
    assert services.leaderboard.rank_of(standings, first["id"]) == 1
    assert services.leaderboard.rank_of(standings, second["id"]) == 2
    assert services.leaderboard.rank_of(standings, unranked["id"]) is None
