"""
seqsfm/pipeline/pair_selection.py

Fallback strategies used when no initial pair qualifies automatically.
The engine hands each strategy the best pairs by match count and never
reads from stdin itself.
"""

from __future__ import annotations
from typing import Callable, List, Optional, Tuple

from seqsfm.features import Pair

PairCandidates = List[Tuple[Pair, int]]   # ((i, j), number of matches)


class PairSelector:
    """Strategy interface: pick a pair among candidates, or return None."""

    def choose(self, candidates: PairCandidates) -> Optional[Pair]:
        raise NotImplementedError


class NoPairSelector(PairSelector):
    """Never picks anything; automatic selection failure is final."""

    def choose(self, candidates: PairCandidates) -> Optional[Pair]:
        return None


class FixedPairSelector(PairSelector):
    def __init__(self, pair: Pair):
        self.pair = (int(pair[0]), int(pair[1]))

    def choose(self, candidates: PairCandidates) -> Optional[Pair]:
        return self.pair


class PromptPairSelector(PairSelector):
    """
    Shows the candidate list through an external callback and parses its
    answer, e.g. "3 7" or "3,7". The callback owns any user interaction.
    """

    def __init__(self, ask: Callable[[str], Optional[str]]):
        self.ask = ask

    @staticmethod
    def format_candidates(candidates: PairCandidates) -> str:
        lines = ["Pairs that have valid intrinsic and high support of points are displayed:"]
        lines += [f"({i},{j})\t\t{n} matches" for (i, j), n in candidates]
        lines.append("type INITIAL pair ids: X Y")
        return "\n".join(lines)

    def choose(self, candidates: PairCandidates) -> Optional[Pair]:
        answer = self.ask(self.format_candidates(candidates))
        if not answer:
            return None
        parts = answer.replace(",", " ").split()
        if len(parts) != 2:
            return None
        try:
            return int(parts[0]), int(parts[1])
        except ValueError:
            return None
