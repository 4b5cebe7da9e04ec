"""Market label classification."""

import re
from typing import Iterable

# Slug patterns for high-volatility sports markets
DEFAULT_SPORTS_PATTERNS = (
    r"^nba-", r"^nfl-", r"^nhl-", r"^mlb-", r"^ncaa-", r"^cfb-", r"^cbb-",
    r"^epl-", r"^ucl-", r"^la-liga-", r"^serie-a-", r"^bundesliga-", r"^bl2-", r"^mls-",
    r"^ufc-", r"^boxing-", r"-spread-", r"-moneyline", r"-total-", r"-over-under",
)


class MarketClassifier:
    """Matches market slugs against a list of case-insensitive regex patterns."""

    def __init__(self, patterns: Iterable[str] = DEFAULT_SPORTS_PATTERNS):
        self._patterns = [re.compile(p, re.IGNORECASE) for p in patterns]

    def is_sports_market(self, market_label: str | None) -> bool:
        if not market_label:
            return False
        return any(p.search(market_label) for p in self._patterns)
