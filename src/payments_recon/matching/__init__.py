"""Contact matching and manual linking."""

from .matcher import ContactMatcher, LinkResult, MatchResult, card_key

__all__ = [
    "ContactMatcher",
    "LinkResult",
    "MatchResult",
    "card_key",
]
