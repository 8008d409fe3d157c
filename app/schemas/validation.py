"""
Input cleaning shared by catalog payloads and the search box

Catalog text keeps a few formatting tags; search queries are reduced to
plain text before the query parser sees them.
"""
import html
import re
from typing import List

import bleach
from pydantic import BaseModel, Field, field_validator

# Formatting tags allowed in movie descriptions
ALLOWED_TAGS = ['b', 'i', 'u', 'em', 'strong', 'p', 'br']

SCRIPT_PATTERNS = [
    re.compile(r'<script[^>]*>', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'on\w+\s*=', re.IGNORECASE),
    re.compile(r'<iframe', re.IGNORECASE),
]

MAX_CAST_NAME_LENGTH = 255


class SafeStringMixin:
    """XSS guards for free-text fields"""

    @staticmethod
    def validate_no_script(value: str) -> str:
        """Reject script-like input outright instead of cleaning it"""
        if value and any(pattern.search(value) for pattern in SCRIPT_PATTERNS):
            raise ValueError("Invalid characters detected")
        return value

    @staticmethod
    def sanitize_html(value: str) -> str:
        """Keep ALLOWED_TAGS, strip everything else"""
        if not value:
            return value
        return bleach.clean(value, tags=ALLOWED_TAGS, strip=True)

    @staticmethod
    def to_plain_text(value: str) -> str:
        """Drop every tag and undo entity escaping, collapse whitespace"""
        if not value:
            return value
        # bleach escapes bare '<' and '&'; the query parser wants them back
        text = html.unescape(bleach.clean(value, tags=[], strip=True))
        return re.sub(r'\s+', ' ', text).strip()


def clean_cast_names(names: List[str]) -> List[str]:
    """
    Normalise a cast list from a request body

    Blank names are dropped and duplicates removed (first occurrence wins).

    Raises:
        ValueError: if a name is too long or looks like markup
    """
    cleaned = []
    for name in names:
        name = SafeStringMixin.to_plain_text(SafeStringMixin.validate_no_script(name or ""))
        if not name:
            continue
        if len(name) > MAX_CAST_NAME_LENGTH:
            raise ValueError(f"Cast name longer than {MAX_CAST_NAME_LENGTH} characters")
        if name not in cleaned:
            cleaned.append(name)
    return cleaned


class SearchQuerySchema(BaseModel, SafeStringMixin):
    """Validated free-text search query"""
    query: str = Field(..., max_length=200)

    @field_validator('query')
    @classmethod
    def clean_query(cls, v):
        return cls.to_plain_text(cls.validate_no_script(v))
