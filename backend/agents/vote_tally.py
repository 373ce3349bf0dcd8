"""
Vote tallying and tie detection. Pure: no store access.

A unique plurality leader is killed; two or more leaders are a tie and the
round repeats from the meeting. A round with no votes at all is reported as
`no_votes` and repeats the same way.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from models.game import VoteOutcome


@dataclass
class VoteTally:
    result: VoteOutcome
    targets: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def victim_id(self) -> Optional[str]:
        return self.targets[0] if self.result == VoteOutcome.KILLED else None


def count_votes(votes: Mapping[str, str]) -> Dict[str, int]:
    """{voter_id: target_id} → {target_id: vote_count}."""
    counts: Dict[str, int] = {}
    for target_id in votes.values():
        counts[target_id] = counts.get(target_id, 0) + 1
    return counts


def tally_votes(votes: Mapping[str, str]) -> VoteTally:
    counts = count_votes(votes)
    if not counts:
        return VoteTally(result=VoteOutcome.NO_VOTES)

    max_votes = max(counts.values())
    leaders = [target for target, count in counts.items() if count == max_votes]

    if len(leaders) > 1:
        return VoteTally(result=VoteOutcome.TIE, targets=leaders, counts=counts)
    return VoteTally(result=VoteOutcome.KILLED, targets=leaders, counts=counts)
