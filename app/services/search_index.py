"""
Search Index Gateway - the only module that talks to OpenSearch

Owns the index mapping, document projection from the relational store,
query execution and document writes. Everything else goes through here.
"""
import os
import logging
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

from dotenv import load_dotenv
from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException, NotFoundError

from app.models.movie import Movie
from app.services.query_compiler import RankedQuery

load_dotenv()

logger = logging.getLogger(__name__)

OPENSEARCH_URL = os.getenv("OPENSEARCH_URL", "http://localhost:9200")
OPENSEARCH_USERNAME = os.getenv("OPENSEARCH_USERNAME")
OPENSEARCH_PASSWORD = os.getenv("OPENSEARCH_PASSWORD")
OPENSEARCH_VERIFY_CERTS = os.getenv("OPENSEARCH_VERIFY_CERTS", "false").lower() == "true"
INDEX_NAME = os.getenv("OPENSEARCH_INDEX", "movies")

MOVIE_INDEX_BODY = {
    "settings": {
        "number_of_shards": 1,
        "number_of_replicas": 0,
    },
    "mappings": {
        "properties": {
            "id": {"type": "keyword"},
            "title": {
                "type": "text",
                "fields": {"keyword": {"type": "keyword"}},
            },
            "description": {"type": "text"},
            "cast": {"type": "text"},
            "type": {"type": "keyword"},
            "releaseDate": {"type": "date"},
            "coverUrl": {"type": "keyword", "index": False},
            "averageRating": {"type": "float"},
            "ratingCount": {"type": "integer"},
            "createdAt": {"type": "date"},
            "updatedAt": {"type": "date"},
        }
    },
}


class SearchUnavailableError(Exception):
    """Raised when the search engine cannot answer a query"""


class BulkIndexError(Exception):
    """
    Raised when some documents of a bulk request were rejected

    Attributes:
        failed_positions: 0-based positions (within the request) that failed
        total: Number of documents in the request
        reasons: Error reason per failed position
    """

    def __init__(self, failed_positions: List[int], total: int, reasons: Optional[List[str]] = None):
        self.failed_positions = failed_positions
        self.total = total
        self.reasons = reasons or []
        super().__init__(f"{len(failed_positions)} of {total} documents failed to index")


class SearchPage:
    """One page of search hits plus the total number of matches"""

    def __init__(self, documents: List[dict], total: int):
        self.documents = documents
        self.total = total

    def __len__(self):
        return len(self.documents)


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class SearchIndexGateway:
    """Thin wrapper around the OpenSearch client for the movie index"""

    def __init__(self, client: Optional[OpenSearch] = None, index_name: str = INDEX_NAME):
        self._client = client
        self.index_name = index_name

    @property
    def client(self) -> OpenSearch:
        if self._client is None:
            auth = None
            if OPENSEARCH_USERNAME and OPENSEARCH_PASSWORD:
                auth = (OPENSEARCH_USERNAME, OPENSEARCH_PASSWORD)
            self._client = OpenSearch(
                hosts=[OPENSEARCH_URL],
                http_auth=auth,
                use_ssl=OPENSEARCH_URL.startswith("https"),
                verify_certs=OPENSEARCH_VERIFY_CERTS,
                ssl_show_warn=False,
                timeout=10,
            )
        return self._client

    # ============================================
    # Index lifecycle
    # ============================================

    def index_exists(self) -> bool:
        return bool(self.client.indices.exists(index=self.index_name))

    def ensure_index(self) -> bool:
        """
        Create the movie index with its mapping if it is missing

        Returns:
            True if the index was created, False if it already existed
        """
        if self.index_exists():
            return False
        self.client.indices.create(index=self.index_name, body=MOVIE_INDEX_BODY)
        logger.info(f"✓ Created search index '{self.index_name}'")
        return True

    def clear_index(self) -> None:
        """Drop and recreate the index (used by sync with deleteExisting)"""
        self.client.indices.delete(index=self.index_name, ignore=[404])
        self.client.indices.create(index=self.index_name, body=MOVIE_INDEX_BODY)
        logger.info(f"Cleared search index '{self.index_name}'")

    def count(self) -> int:
        response = self.client.count(index=self.index_name)
        return int(response.get("count", 0))

    # ============================================
    # Documents
    # ============================================

    @staticmethod
    def to_document(movie: Movie, avg_rating: Optional[float] = None,
                    ratings_count: Optional[int] = None) -> dict:
        """
        Project a store movie into its index document

        Args:
            movie: Movie with casts loaded
            avg_rating: Override for the stored average (sync recomputes it)
            ratings_count: Override for the stored count
        """
        cast = [entry.actor.name for entry in movie.casts if entry.actor is not None]
        average = movie.avg_rating if avg_rating is None else avg_rating
        count = movie.ratings_count if ratings_count is None else ratings_count
        movie_type = movie.type.value if hasattr(movie.type, "value") else movie.type

        return {
            "id": str(movie.id),
            "title": movie.title,
            "description": movie.description or "",
            "cast": cast,
            "type": movie_type,
            "releaseDate": _iso(movie.release_date),
            "coverUrl": movie.cover_url,
            "averageRating": round(float(average or 0), 2),
            "ratingCount": int(count or 0),
            "createdAt": _iso(movie.created_at),
            "updatedAt": _iso(movie.updated_at),
        }

    @staticmethod
    def hit_to_movie(hit: dict) -> dict:
        """Convert a search hit into the API movie shape"""
        source = hit.get("_source", {})
        release_date = source.get("releaseDate")
        return {
            "id": int(source.get("id", hit.get("_id"))),
            "title": source.get("title", ""),
            "description": source.get("description") or "",
            "cover_url": source.get("coverUrl"),
            "release_date": release_date[:10] if release_date else None,
            "type": source.get("type"),
            "avg_rating": source.get("averageRating") or 0.0,
            "ratings_count": source.get("ratingCount") or 0,
            "casts": [{"actor": {"name": name}} for name in source.get("cast", [])],
            "score": hit.get("_score"),
        }

    def upsert(self, document: dict, refresh: bool = False) -> None:
        """Create or fully replace one document"""
        self.client.index(
            index=self.index_name,
            id=document["id"],
            body=document,
            refresh=refresh,
        )

    def bulk_upsert(self, documents: List[dict]) -> int:
        """
        Index many documents in one request

        Returns:
            Number of documents indexed

        Raises:
            BulkIndexError: some or all documents were rejected
        """
        if not documents:
            return 0

        actions = []
        for document in documents:
            actions.append({"index": {"_index": self.index_name, "_id": document["id"]}})
            actions.append(document)

        try:
            response = self.client.bulk(body=actions)
        except OpenSearchException as e:
            logger.error(f"✗ Bulk request failed: {e}")
            raise BulkIndexError(list(range(len(documents))), len(documents), [str(e)]) from e

        if not response.get("errors"):
            return len(documents)

        failed, reasons = [], []
        for position, item in enumerate(response.get("items", [])):
            result = item.get("index") or next(iter(item.values()), {})
            if result.get("error"):
                failed.append(position)
                reasons.append(str(result["error"]))

        if failed:
            raise BulkIndexError(failed, len(documents), reasons)
        return len(documents)

    def update_aggregate_fields(self, movie_id: int, avg_rating: float, ratings_count: int) -> bool:
        """
        Partially update the rating fields of one document

        Never raises. A missing document or an unreachable engine is logged
        and reported as False so the caller can fall back to a full upsert.
        """
        try:
            self.client.update(
                index=self.index_name,
                id=str(movie_id),
                body={
                    "doc": {
                        "averageRating": round(float(avg_rating), 2),
                        "ratingCount": int(ratings_count),
                        "updatedAt": datetime.now(timezone.utc).isoformat(),
                    }
                },
            )
            return True
        except NotFoundError:
            logger.warning(f"Movie {movie_id} is not in the search index yet")
            return False
        except OpenSearchException as e:
            logger.warning(f"Failed to update rating fields for movie {movie_id}: {e}")
            return False

    def delete(self, movie_id: int) -> bool:
        try:
            self.client.delete(index=self.index_name, id=str(movie_id))
            return True
        except NotFoundError:
            return False

    def get(self, movie_id: int) -> Optional[dict]:
        try:
            response = self.client.get(index=self.index_name, id=str(movie_id))
        except NotFoundError:
            return None
        return response.get("_source")

    # ============================================
    # Queries
    # ============================================

    def execute(self, ranked: RankedQuery, offset: int = 0, size: int = 10) -> SearchPage:
        """
        Run a compiled query

        Raises:
            SearchUnavailableError: the engine could not be reached or rejected the query
        """
        try:
            response = self.client.search(index=self.index_name, body=ranked.to_body(offset, size))
        except OpenSearchException as e:
            logger.error(f"✗ Search failed: {e}")
            raise SearchUnavailableError(str(e)) from e

        hits = response.get("hits", {})
        total = hits.get("total", 0)
        # Newer engines report {"value": n, "relation": "eq"}
        if isinstance(total, dict):
            total = total.get("value", 0)

        return SearchPage(documents=list(hits.get("hits", [])), total=int(total))

    def health(self) -> Dict[str, Any]:
        """Connection and index status for the health endpoint"""
        try:
            exists = self.index_exists()
            return {
                "status": "connected",
                "index": self.index_name,
                "indexExists": exists,
                "documents": self.count() if exists else 0,
            }
        except OpenSearchException as e:
            return {"status": "unavailable", "error": str(e)}


search_index = SearchIndexGateway()


def get_search_index() -> SearchIndexGateway:
    """FastAPI dependency for the shared gateway"""
    return search_index
