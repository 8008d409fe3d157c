"""
Query Compiler - turns SearchCriteria into an OpenSearch query body

Filters are non-scoring and conjunctive. The leftover text becomes a
weighted disjunction of phrase/prefix matches on title, description and
cast, with title hits weighted highest.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, List

from app.models.movie import MovieType
from app.schemas.search import SearchCriteria

# (query type, field, boost) in descending importance
TEXT_CLAUSES = (
    ("match_phrase", "title", 10),
    ("match_phrase_prefix", "title", 8),
    ("match_phrase", "description", 7),
    ("match_phrase_prefix", "description", 5),
    ("match_phrase", "cast", 3),
    ("match_phrase_prefix", "cast", 2),
)

# Tie-breakers after relevance; id keeps paging stable
SECONDARY_SORT = [
    {"averageRating": {"order": "desc"}},
    {"ratingCount": {"order": "desc"}},
    {"id": {"order": "asc"}},
]


@dataclass
class RankedQuery:
    """Compiled query plus its sort order"""
    query: dict
    sort: List[dict] = field(default_factory=list)
    has_text: bool = False

    def to_body(self, offset: int = 0, size: int = 10) -> dict:
        return {
            "query": self.query,
            "sort": self.sort,
            "from": offset,
            "size": size,
            "track_total_hits": True,
        }


def page_offset(page_index: int, page_size: int) -> int:
    """Translate a 0-based page index into a result offset"""
    return max(page_index, 0) * page_size


def _year_start(year: int) -> str:
    return f"{year:04d}-01-01"


def build_filters(criteria: SearchCriteria, type_override: Optional[MovieType] = None,
                  today: Optional[date] = None) -> List[dict]:
    """Non-scoring filter clauses for every structured criterion"""
    filters = []

    movie_type = type_override or criteria.type
    if movie_type is not None:
        filters.append({"term": {"type": MovieType(movie_type).value}})

    rating_range = {}
    if criteria.min_rating is not None:
        rating_range["gte"] = criteria.min_rating
    if criteria.max_rating is not None:
        rating_range["lte"] = criteria.max_rating
    if rating_range:
        filters.append({"range": {"averageRating": rating_range}})

    current_year = (today or date.today()).year
    date_bounds = []
    if criteria.after_year is not None:
        date_bounds.append(("gte", _year_start(criteria.after_year)))
    if criteria.before_year is not None:
        # "before 2000" keeps 2000 itself
        date_bounds.append(("lt", _year_start(criteria.before_year + 1)))
    if criteria.older_than_years is not None:
        date_bounds.append(("lt", _year_start(current_year - criteria.older_than_years)))
    if criteria.newer_than_years is not None:
        date_bounds.append(("gte", _year_start(current_year - criteria.newer_than_years)))

    # One range clause per bound; two upper bounds must both hold
    for operator, value in date_bounds:
        filters.append({"range": {"releaseDate": {operator: value}}})

    for name in criteria.cast_names or []:
        filters.append({
            "match": {"cast": {"query": name, "fuzziness": "AUTO", "operator": "and"}}
        })

    return filters


def build_text_clause(text: str) -> dict:
    """Weighted phrase/prefix disjunction over title, description and cast"""
    text = text.lower()
    should = [
        {query_type: {field_name: {"query": text, "boost": boost}}}
        for query_type, field_name, boost in TEXT_CLAUSES
    ]
    return {"bool": {"should": should, "minimum_should_match": 1}}


def compile_query(criteria: SearchCriteria, type_override: Optional[MovieType] = None,
                  today: Optional[date] = None) -> RankedQuery:
    """
    Compile parsed criteria into a ranked OpenSearch query

    Args:
        criteria: Output of the query parser
        type_override: Explicit type from the request, wins over criteria.type
        today: Reference date for relative-age filters (defaults to today)

    Returns:
        RankedQuery; match_all when no criterion is set
    """
    filters = build_filters(criteria, type_override=type_override, today=today)
    has_text = bool(criteria.text_query)

    if not filters and not has_text:
        return RankedQuery(query={"match_all": {}}, sort=list(SECONDARY_SORT))

    query = {"bool": {}}
    if filters:
        query["bool"]["filter"] = filters
    if has_text:
        query["bool"]["must"] = [build_text_clause(criteria.text_query)]

    sort = list(SECONDARY_SORT)
    if has_text:
        sort.insert(0, {"_score": {"order": "desc"}})

    return RankedQuery(query=query, sort=sort, has_text=has_text)


def compile_top_rated(movie_type: Optional[MovieType] = None) -> RankedQuery:
    """Query for the top-rated listing: optional type filter, rating order"""
    return compile_query(SearchCriteria(), type_override=movie_type)
