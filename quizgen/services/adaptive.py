from typing import Callable, List, NamedTuple, Optional

DIFFICULTIES = ("easy", "medium", "hard")
DEFAULT_DIFFICULTY = "medium"


class Rule(NamedTuple):
    name: str
    applies: Callable[[float, str], bool]
    target: Callable[[str], str]


# Evaluated top to bottom; the first rule that applies wins
RULES: List[Rule] = [
    Rule("promote", lambda avg, last: avg >= 85 and last != "hard", lambda last: "hard"),
    Rule("hold_medium", lambda avg, last: 70 <= avg < 85, lambda last: "medium"),
    Rule("demote", lambda avg, last: avg < 70 and last != "easy", lambda last: "easy"),
    Rule("unchanged", lambda avg, last: True, lambda last: last),
]


def matching_rule(avg_score: float, last: str) -> Rule:
    return next(r for r in RULES if r.applies(avg_score, last))


def next_difficulty(avg_score: Optional[float], last_difficulty: Optional[str]) -> str:
    last = last_difficulty if last_difficulty in DIFFICULTIES else DEFAULT_DIFFICULTY
    avg = float(avg_score or 0.0)
    return matching_rule(avg, last).target(last)
