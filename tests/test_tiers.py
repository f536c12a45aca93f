import pytest

from fatebox.config import DEFAULT_BRACKETS, TierBracket
from fatebox.tiers import TierOdds, interpolate_odds, validate_brackets


def _sum(odds: TierOdds) -> float:
    return odds.dud + odds.rebate + odds.breakeven + odds.profit + odds.jackpot


def test_at_or_below_first_threshold_uses_first_bracket():
    for score in (0, 3, 5):
        odds = interpolate_odds(score, DEFAULT_BRACKETS)
        assert odds == TierOdds(0, 72, 17, 9)
        assert odds.jackpot == pytest.approx(2)


def test_interpolates_between_brackets():
    odds = interpolate_odds(9, DEFAULT_BRACKETS)        # halfway between 5 and 13
    assert odds.rebate == pytest.approx(64.5)
    assert odds.breakeven == pytest.approx(21.5)
    assert odds.profit == pytest.approx(12)
    assert interpolate_odds(13, DEFAULT_BRACKETS) == TierOdds(0, 57, 26, 15)


def test_top_bracket_reached_at_its_threshold():
    assert interpolate_odds(60, DEFAULT_BRACKETS) == TierOdds(0, 44, 34, 20)


def test_above_top_holds_flat_without_ceiling():
    brackets = (
        TierBracket(5, 0, 72, 17, 9),
        TierBracket(13, 0, 57, 26, 15),
        TierBracket(30, 0, 44, 34, 20),
    )
    assert interpolate_odds(45, brackets) == TierOdds(0, 44, 34, 20)


def test_above_top_interpolates_to_ceiling():
    brackets = (
        TierBracket(5, 0, 72, 17, 9),
        TierBracket(13, 0, 57, 26, 15),
        TierBracket(30, 0, 44, 34, 20),
    )
    ceiling = TierBracket(60, 0, 30, 40, 25)
    mid = interpolate_odds(45, brackets, ceiling)
    assert mid.rebate == pytest.approx(37)
    assert interpolate_odds(60, brackets, ceiling) == TierOdds(0, 30, 40, 25)
    assert interpolate_odds(90, brackets, ceiling) == TierOdds(0, 30, 40, 25)


def test_probabilities_always_sum_to_100():
    for score in range(0, 70):
        odds = interpolate_odds(score, DEFAULT_BRACKETS)
        assert _sum(odds) == pytest.approx(100)
        assert all(0 <= v <= 100 for v in odds.as_dict().values())


def test_oversubscribed_bracket_is_scaled_back():
    brackets = (TierBracket(5, 10, 60, 30, 20), TierBracket(13), TierBracket(60))
    odds = interpolate_odds(0, brackets)
    assert odds.dud + odds.rebate + odds.breakeven + odds.profit == pytest.approx(100)
    assert odds.jackpot == pytest.approx(0, abs=1e-9)
    assert odds.rebate == pytest.approx(50)


def test_validate_brackets():
    assert validate_brackets(DEFAULT_BRACKETS) == []
    bad = (TierBracket(13, 0, 60, 30, 20), TierBracket(5))
    problems = validate_brackets(bad)
    assert any("ascending" in p for p in problems)
    assert any("sum" in p for p in problems)
    assert validate_brackets(DEFAULT_BRACKETS, TierBracket(40)) != []
