import random

from broadcast_engine.models import PacingPolicy
from broadcast_engine.pacing import DEFAULT_SEND_DELAY_MS, pacing_delay_ms


def test_none_policy_uses_fixed_delay():
    assert pacing_delay_ms("none") == DEFAULT_SEND_DELAY_MS == 350
    assert pacing_delay_ms(PacingPolicy.NONE) == 350


def test_missing_or_unknown_policy_falls_back_to_fixed_delay():
    assert pacing_delay_ms(None) == 350
    assert pacing_delay_ms("") == 350
    assert pacing_delay_ms("1-2") == 350


def test_ten_to_twenty_seconds_within_bounds():
    rng = random.Random(1234)
    samples = [pacing_delay_ms("10-20", rng) for _ in range(1000)]
    assert all(10_000 <= value <= 20_000 for value in samples)
    assert len(set(samples)) > 1


def test_five_to_ten_seconds_within_bounds():
    samples = [pacing_delay_ms(PacingPolicy.RANGE_5_10) for _ in range(500)]
    assert all(5_000 <= value <= 10_000 for value in samples)


def test_bounds_are_inclusive():
    class Edge:
        def __init__(self, pick_high):
            self.pick_high = pick_high

        def randint(self, low, high):
            return high if self.pick_high else low

    assert pacing_delay_ms("5-10", Edge(False)) == 5_000
    assert pacing_delay_ms("10-20", Edge(True)) == 20_000
