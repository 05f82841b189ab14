import pytest

from padel_bot.config import Config
from padel_bot.utils.glicko import GlickoCalculator, GlickoRating


NEW_PLAYER = GlickoRating(1500.0, 350.0, 0.06)


def test_winners_gain_and_losers_lose():
    after = GlickoCalculator.calculate_match_ratings([NEW_PLAYER] * 4, winner_team=1)

    assert after[0].rating > 1500 and after[1].rating > 1500
    assert after[2].rating < 1500 and after[3].rating < 1500
    # Equal teammates end up equal
    assert after[0] == after[1]
    assert after[2] == after[3]
    # Symmetric for equal starting ratings
    assert after[0].rating - 1500 == pytest.approx(1500 - after[2].rating, abs=1e-6)


def test_deviation_shrinks_after_a_match():
    after = GlickoCalculator.calculate_match_ratings([NEW_PLAYER] * 4, winner_team=2)

    for rating in after:
        assert rating.rd < NEW_PLAYER.rd
        assert rating.rd <= Config.MAX_RD


def test_result_does_not_depend_on_slot_order():
    a = GlickoRating(1620.0, 80.0, 0.06)
    b = GlickoRating(1480.0, 120.0, 0.059)
    c = GlickoRating(1550.0, 200.0, 0.06)
    d = GlickoRating(1400.0, 300.0, 0.061)

    forward = GlickoCalculator.calculate_match_ratings([a, b, c, d], winner_team=2)
    swapped = GlickoCalculator.calculate_match_ratings([c, d, a, b], winner_team=1)

    assert forward == swapped[2:] + swapped[:2]


def test_upset_moves_ratings_more_than_expected_win():
    strong = GlickoRating(1800.0, 60.0, 0.06)
    weak = GlickoRating(1300.0, 60.0, 0.06)

    expected = GlickoCalculator.calculate_match_ratings([strong, strong, weak, weak], winner_team=1)
    upset = GlickoCalculator.calculate_match_ratings([strong, strong, weak, weak], winner_team=2)

    assert upset[2].rating - weak.rating > expected[0].rating - strong.rating


@pytest.mark.parametrize("players,winner", [
    ([NEW_PLAYER] * 3, 1),
    ([NEW_PLAYER] * 5, 1),
    ([NEW_PLAYER] * 4, 0),
    ([NEW_PLAYER] * 4, None),
])
def test_invalid_matches_are_rejected(players, winner):
    with pytest.raises(ValueError):
        GlickoCalculator.calculate_match_ratings(players, winner)


def test_format_rating_change():
    assert GlickoCalculator.format_rating_change(1500.0, 1532.4) == "1500 → 1532 (+32)"
    assert GlickoCalculator.format_rating_change(1500.0, 1470.2) == "1500 → 1470 (-30)"
    assert GlickoCalculator.format_rating_change(1500.0, 1500.3) == "1500 → 1500 (0)"


@pytest.mark.parametrize("rating,description", [
    (1200, "Beginner"),
    (1300, "Intermediate"),
    (1500, "Advanced"),
    (1750, "Expert"),
    (2000, "Professional"),
    (2400, "Elite"),
])
def test_rating_description(rating, description):
    assert GlickoCalculator.get_rating_description(rating) == description
