"""
Query Parser - turns a free-text search string into SearchCriteria

Supported grammar (case-insensitive, applied in this order):
- Years:         "after|since|from 2010", "before 2000"
- Relative age:  "older than 5 years", "newer than|within (the) last|in the past 3 years"
- Ratings (first matching phrase wins):
    "less than|under|below|maximum|max 3 stars"  -> max 2.99
    "more than|above|over 3 stars"               -> min 3.01
    "at least|minimum|min 3 stars"               -> min 3
    "at most|maximum of|max of 3 stars"          -> max 3
    "(exactly) 3 stars"                          -> min 3, max 3
- Whatever is left over becomes the text query.

Parsing never fails: input that matches nothing is returned as plain text.
"""
import re
import logging
from typing import Optional

from app.schemas.search import SearchCriteria

logger = logging.getLogger(__name__)

# Shift applied to "more than"/"less than" bounds. Averages are stored
# rounded to 2 decimals, so 0.01 is the smallest representable step.
EXCLUSIVE_STEP = 0.01

MIN_STARS = 1
MAX_STARS = 5

# Shortest leftover text still worth a relevance query
MIN_TEXT_LENGTH = 2


class QueryParser:
    """Rule-based parser for the rating/date phrase grammar"""

    # Common typos of "than" and variants of "stars"
    NORMALIZATIONS = [
        (re.compile(r'\bthen\b'), 'than'),
        (re.compile(r'\bthand\b'), 'than'),
        (re.compile(r'\bthna\b'), 'than'),
        (re.compile(r'\btha\b'), 'than'),
        (re.compile(r'\bs\s+stars?\b'), 'stars'),
        (re.compile(r'\bstars?\s+s\b'), 'stars'),
        (re.compile(r'\bstar\b'), 'stars'),
        (re.compile(r'\bstrs?\b'), 'stars'),
    ]

    AFTER_YEAR = re.compile(r'\b(?:after|since|from)\s+(\d{4})\b')
    BEFORE_YEAR = re.compile(r'\bbefore\s+(\d{4})\b')

    OLDER_THAN = re.compile(r'\bolder\s+than\s+(\d+)\s*years?\b')
    NEWER_THAN = re.compile(
        r'\b(?:newer\s+than|within\s+(?:the\s+)?last|in\s+the\s+past)\s+(\d+)\s*years?\b'
    )

    _STARS = r'(\d+(?:\.\d+)?)\s*stars?\b'

    # Most specific first so "more than 3 stars" never reaches the exact pattern
    RATING_CHAIN = [
        ('below', re.compile(r'\b(?:less\s+than|under|below|maximum|max)\s+' + _STARS)),
        ('above', re.compile(r'\b(?:more\s+than|above|over)\s+' + _STARS)),
        ('at_least', re.compile(r'\b(?:at\s+least|minimum|min)\s+' + _STARS)),
        ('at_most', re.compile(r'\b(?:at\s+most|maximum\s+of|max\s+of)\s+' + _STARS)),
        ('exact', re.compile(r'\b(?:exactly\s+)?' + _STARS)),
    ]

    @classmethod
    def normalize(cls, query: str) -> str:
        """Lowercase, fix known typos and collapse whitespace"""
        text = query.lower()
        for pattern, replacement in cls.NORMALIZATIONS:
            text = pattern.sub(replacement, text)
        return re.sub(r'\s+', ' ', text).strip()

    @staticmethod
    def _consume(pattern: re.Pattern, text: str):
        """Return (first match, text with that match removed) or (None, text)"""
        match = pattern.search(text)
        if not match:
            return None, text
        return match, text[:match.start()] + ' ' + text[match.end():]

    @classmethod
    def parse(cls, raw: Optional[str]) -> SearchCriteria:
        """
        Extract structured criteria from a search string

        Args:
            raw: Free text typed by the user (may be None or empty)

        Returns:
            SearchCriteria; every field is optional
        """
        if not raw or not raw.strip():
            return SearchCriteria()

        text = cls.normalize(raw)
        found = {}

        # Absolute years
        match, text = cls._consume(cls.AFTER_YEAR, text)
        if match:
            found['after_year'] = int(match.group(1))

        match, text = cls._consume(cls.BEFORE_YEAR, text)
        if match:
            found['before_year'] = int(match.group(1))

        # Relative age
        match, text = cls._consume(cls.OLDER_THAN, text)
        if match:
            found['older_than_years'] = int(match.group(1))

        match, text = cls._consume(cls.NEWER_THAN, text)
        if match:
            found['newer_than_years'] = int(match.group(1))

        # Rating: the first phrase that matches decides, valid or not
        for kind, pattern in cls.RATING_CHAIN:
            match = pattern.search(text)
            if not match:
                continue

            stars = float(match.group(1))
            if MIN_STARS <= stars <= MAX_STARS:
                found.update(cls._rating_bounds(kind, stars))
                text = text[:match.start()] + ' ' + text[match.end():]
            break

        text = re.sub(r'\s+', ' ', text).strip()
        if len(text) >= MIN_TEXT_LENGTH:
            found['text_query'] = text

        criteria = SearchCriteria(**found)
        logger.debug(f"Parsed query {raw!r} -> {criteria.model_dump(exclude_none=True)}")
        return criteria

    @staticmethod
    def _rating_bounds(kind: str, stars: float) -> dict:
        if kind == 'below':
            return {'max_rating': round(stars - EXCLUSIVE_STEP, 2)}
        if kind == 'above':
            return {'min_rating': round(stars + EXCLUSIVE_STEP, 2)}
        if kind == 'at_least':
            return {'min_rating': stars}
        if kind == 'at_most':
            return {'max_rating': stars}
        return {'min_rating': stars, 'max_rating': stars}


def parse_query(raw: Optional[str]) -> SearchCriteria:
    """Module-level shortcut for QueryParser.parse"""
    return QueryParser.parse(raw)
