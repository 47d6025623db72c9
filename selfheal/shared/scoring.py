"""Session scoring.

Rules:
  • up to 60 points for the share of bugs fixed
  • +20 when the test suite passes
  • +10 for finishing in ≤ 2 attempts, +5 for 3
  • +10 speed bonus under 300 seconds
  • −1 per commit beyond 20
  • final score clamped to [0, 100]
"""

from __future__ import annotations

import math

from selfheal.shared.schemas import HealingScore

SPEED_BONUS_THRESHOLD_SEC = 300
SPEED_BONUS = 10
COMMIT_PENALTY_THRESHOLD = 20


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; 22.5 must score 23
    return int(math.floor(value + 0.5))


def calculate_score(
    total_bugs: int,
    bugs_fixed: int,
    tests_passed: bool,
    attempts: int,
    total_commits: int,
    elapsed_seconds: float,
) -> HealingScore:
    base = _round_half_up(bugs_fixed / total_bugs * 60) if total_bugs > 0 else 0

    if tests_passed:
        base += 20

    if attempts <= 2:
        base += 10
    elif attempts <= 3:
        base += 5

    speed_bonus = SPEED_BONUS if elapsed_seconds < SPEED_BONUS_THRESHOLD_SEC else 0
    commit_penalty = max(0, total_commits - COMMIT_PENALTY_THRESHOLD)

    final_score = max(0, min(100, base + speed_bonus - commit_penalty))

    return HealingScore(
        total_bugs=total_bugs,
        bugs_fixed=bugs_fixed,
        tests_passed=tests_passed,
        attempts=attempts,
        total_commits=total_commits,
        time_seconds=_round_half_up(elapsed_seconds),
        speed_bonus=speed_bonus,
        commit_penalty=commit_penalty,
        final_score=final_score,
    )
