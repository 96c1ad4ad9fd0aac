"""Fuzzy method matching for catalog search.

Pattern characters must appear in the entry in order, but not necessarily
consecutively. Scoring rewards consecutive matches, word boundary matches
and start-of-text matches, and penalizes gaps.
"""

from typing import List, Sequence, Tuple

from .types import CatalogEntry


class FuzzyMatcher:
    """Subsequence matcher with boundary-aware scoring."""

    # Scoring constants
    CONSECUTIVE_BONUS = 10      # Bonus for consecutive character matches
    START_BONUS = 15            # Bonus for matching at start of text
    BOUNDARY_BONUS = 10         # Bonus for matching after word boundary
    GAP_PENALTY = 1             # Penalty per character gap between matches
    WORD_SEPARATORS = '/._-'    # Service/method and package separators

    @classmethod
    def match(cls, pattern: str, text: str) -> Tuple[bool, int]:
        """Calculate fuzzy match score.

        Args:
            pattern: The search pattern (what the user typed).
            text: The catalog entry to match against.

        Returns:
            Tuple of (matches, score). Score is only meaningful when
            matches is True; higher is better.

        Example:
            >>> FuzzyMatcher.match("sayh", "helloworld.Greeter/SayHello")
            (True, 50)
            >>> FuzzyMatcher.match("xyz", "helloworld.Greeter/SayHello")
            (False, 0)
        """
        if not pattern:
            return True, 0

        pattern_lower = pattern.lower()
        text_lower = text.lower()

        pi = 0
        score = 0
        prev_match_idx = -1

        for ti, char in enumerate(text_lower):
            if pi >= len(pattern_lower):
                break
            if char != pattern_lower[pi]:
                continue

            if prev_match_idx >= 0:
                gap = ti - prev_match_idx - 1
                if gap == 0:
                    score += cls.CONSECUTIVE_BONUS
                else:
                    score -= gap * cls.GAP_PENALTY

            if ti == 0:
                score += cls.START_BONUS
            elif text_lower[ti - 1] in cls.WORD_SEPARATORS:
                score += cls.BOUNDARY_BONUS
            elif text[ti].isupper() and text[ti - 1].islower():
                # CamelCase hump, e.g. the H in SayHello
                score += cls.BOUNDARY_BONUS

            prev_match_idx = ti
            pi += 1

        if pi == len(pattern_lower):
            return True, score
        return False, 0


def find(query: str, catalog: Sequence[CatalogEntry]) -> List[CatalogEntry]:
    """Rank catalog entries against a query, best first.

    An empty (or blank) query returns the catalog unchanged in discovery
    order. Entries that do not match are dropped; ties keep discovery order.

    Args:
        query: Search text.
        catalog: Entries in discovery order.

    Returns:
        Matching entries ordered by relevance. Empty if nothing matches.
    """
    query = query.strip()
    if not query:
        return list(catalog)

    scored = []
    for index, entry in enumerate(catalog):
        matches, score = FuzzyMatcher.match(query, entry)
        if matches:
            scored.append((-score, index, entry))

    scored.sort()
    return [entry for _, _, entry in scored]
