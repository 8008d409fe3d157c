import os
import copy
from datetime import date

import fakeredis
import pytest
from fastapi.testclient import TestClient
from opensearchpy.exceptions import NotFoundError, ConnectionError as OpenSearchConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Must be set before the app modules read them
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENABLE_BACKGROUND_JOBS"] = "false"
os.environ["ENABLE_RATING_CONSUMER"] = "false"
os.environ["ENABLE_STARTUP_SYNC"] = "false"

from app.database import Base, get_db
from app.main import app
from app.models.actor import Actor, MovieCast
from app.models.movie import Movie, MovieType
from app.services import rating_events, search_index as search_index_module, sync_service as sync_module
from app.services.rating_consumer import RatingAggregateConsumer
from app.services.rating_events import RatingEventPublisher
from app.services.search_index import SearchIndexGateway
from app.services.sync_service import SyncJobRegistry, SyncService
from app.utils import cache as cache_module
from app.utils.cache import RatingStatsCache

TEST_API_KEY = "test-api-key"

SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================
# In-memory OpenSearch client
# ============================================

class FakeIndices:
    def __init__(self, engine):
        self._engine = engine

    def exists(self, index):
        return index in self._engine.indexes

    def create(self, index, body=None):
        self._engine.indexes[index] = {}
        self._engine.mappings[index] = body or {}
        return {"acknowledged": True}

    def delete(self, index, ignore=None):
        self._engine.indexes.pop(index, None)
        self._engine.mappings.pop(index, None)
        return {"acknowledged": True}


class FakeOpenSearch:
    """
    Just enough of the opensearch-py client for the gateway: documents live
    in dicts, text clauses are case-insensitive substring checks.
    """

    def __init__(self):
        self.indexes = {}
        self.mappings = {}
        self.indices = FakeIndices(self)
        self.searches = []
        self.fail_bulk_ids = set()
        self.fail_updates = False
        self.fail_writes = False
        self.unavailable = False
        self.total_as_dict = True

    def _docs(self, index):
        if index not in self.indexes:
            raise NotFoundError(404, "index_not_found_exception", {"index": index})
        return self.indexes[index]

    def index(self, index, id, body, refresh=False):
        if self.fail_writes:
            raise OpenSearchConnectionError("N/A", "connection refused", None)
        self.indexes.setdefault(index, {})[str(id)] = copy.deepcopy(body)
        return {"result": "created", "_id": str(id)}

    def update(self, index, id, body):
        if self.fail_updates:
            raise OpenSearchConnectionError("N/A", "connection refused", None)
        docs = self._docs(index)
        if str(id) not in docs:
            raise NotFoundError(404, "document_missing_exception", {"_id": str(id)})
        docs[str(id)].update(body["doc"])
        return {"result": "updated"}

    def bulk(self, body):
        items = []
        errors = False
        for action, document in zip(body[0::2], body[1::2]):
            meta = action["index"]
            if meta["_id"] in self.fail_bulk_ids:
                errors = True
                items.append({"index": {"_id": meta["_id"], "status": 400,
                                        "error": {"type": "mapper_parsing_exception"}}})
                continue
            self.indexes.setdefault(meta["_index"], {})[meta["_id"]] = copy.deepcopy(document)
            items.append({"index": {"_id": meta["_id"], "status": 201}})
        return {"errors": errors, "items": items}

    def count(self, index):
        return {"count": len(self._docs(index))}

    def get(self, index, id):
        docs = self._docs(index)
        if str(id) not in docs:
            raise NotFoundError(404, "not_found", {"_id": str(id)})
        return {"_id": str(id), "_source": copy.deepcopy(docs[str(id)])}

    def delete(self, index, id):
        docs = self._docs(index)
        if str(id) not in docs:
            raise NotFoundError(404, "not_found", {"_id": str(id)})
        del docs[str(id)]
        return {"result": "deleted"}

    # ---- query evaluation ----

    @staticmethod
    def _text_values(document, field):
        value = document.get(field)
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v).lower() for v in value]
        return [str(value).lower()]

    def _clause_score(self, clause, document):
        """Score contributed by one leaf clause, None when it does not match"""
        (query_type, params), = clause.items()
        if query_type == "match_all":
            return 1.0
        if query_type == "term":
            (field, expected), = params.items()
            return 1.0 if document.get(field) == expected else None
        if query_type == "range":
            (field, bounds), = params.items()
            value = document.get(field)
            if value is None:
                return None
            checks = {
                "gte": lambda v, b: v >= b,
                "gt": lambda v, b: v > b,
                "lte": lambda v, b: v <= b,
                "lt": lambda v, b: v < b,
            }
            for operator, bound in bounds.items():
                if not checks[operator](value, bound):
                    return None
            return 1.0
        if query_type in ("match", "match_phrase", "match_phrase_prefix"):
            (field, options), = params.items()
            text = options["query"].lower() if isinstance(options, dict) else str(options).lower()
            boost = options.get("boost", 1.0) if isinstance(options, dict) else 1.0
            for value in self._text_values(document, field):
                if query_type == "match_phrase" and f" {text} " in f" {value} ":
                    return float(boost)
                if query_type != "match_phrase" and text in value:
                    return float(boost)
            return None
        if query_type == "bool":
            return self._bool_score(params, document)
        raise ValueError(f"Unsupported clause {query_type}")

    def _bool_score(self, params, document):
        score = 0.0
        for clause in params.get("filter", []):
            if self._clause_score(clause, document) is None:
                return None
        for clause in params.get("must", []):
            clause_score = self._clause_score(clause, document)
            if clause_score is None:
                return None
            score += clause_score
        should = params.get("should", [])
        if should:
            matched = [s for s in (self._clause_score(c, document) for c in should) if s is not None]
            if len(matched) < params.get("minimum_should_match", 0):
                return None
            score += sum(matched)
        return score

    def search(self, index, body):
        if self.unavailable:
            raise OpenSearchConnectionError("N/A", "connection refused", None)
        self.searches.append(copy.deepcopy(body))

        hits = []
        for doc_id, document in self._docs(index).items():
            score = self._clause_score(body["query"], document)
            if score is not None:
                hits.append({"_id": doc_id, "_score": score, "_source": copy.deepcopy(document)})

        for sort_clause in reversed(body.get("sort", [])):
            (field, options), = sort_clause.items()
            reverse = options.get("order") == "desc"
            if field == "_score":
                hits.sort(key=lambda h: h["_score"], reverse=reverse)
            elif field == "id":
                hits.sort(key=lambda h: int(h["_source"]["id"]), reverse=reverse)
            else:
                hits.sort(key=lambda h: h["_source"].get(field) or 0, reverse=reverse)

        offset = body.get("from", 0)
        size = body.get("size", 10)
        total = len(hits)
        return {
            "hits": {
                "total": {"value": total, "relation": "eq"} if self.total_as_dict else total,
                "hits": hits[offset:offset + size],
            }
        }


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def db_session():
    """Provide a clean database session for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture
def gateway(fake_opensearch):
    index = SearchIndexGateway(client=fake_opensearch, index_name="movies")
    index.ensure_index()
    return index


@pytest.fixture
def rating_cache(fake_redis):
    return RatingStatsCache(fake_redis, ttl=300)


@pytest.fixture
def publisher(fake_redis):
    events = RatingEventPublisher(fake_redis, stream_key="rating-events", group="rating-consumers")
    events.ensure_group()
    return events


@pytest.fixture
def consumer(fake_redis, gateway, rating_cache, publisher):
    return RatingAggregateConsumer(
        client=fake_redis,
        session_factory=TestingSessionLocal,
        index=gateway,
        cache=rating_cache,
        publisher=publisher,
        consumer_name="test-consumer",
        batch_size=10,
        block_ms=None,
        retry_ms=0,
    )


@pytest.fixture
def syncer(gateway):
    return SyncService(TestingSessionLocal, gateway, SyncJobRegistry())


@pytest.fixture
def make_movie(db_session):
    """Factory for catalog rows: make_movie("Title", cast=["Name"], ...)"""

    def _make(title, description="", movie_type=MovieType.MOVIE, release_date=date(2015, 6, 1),
              cast=(), avg_rating=0.0, ratings_count=0):
        movie = Movie(
            title=title,
            description=description,
            type=movie_type,
            release_date=release_date,
            avg_rating=avg_rating,
            ratings_count=ratings_count,
        )
        db_session.add(movie)
        db_session.flush()
        for name in cast:
            actor = db_session.query(Actor).filter(Actor.name == name).first()
            if actor is None:
                actor = Actor(name=name)
                db_session.add(actor)
                db_session.flush()
            db_session.add(MovieCast(movie_id=movie.id, actor_id=actor.id))
        db_session.commit()
        db_session.refresh(movie)
        return movie

    return _make


@pytest.fixture
def client(db_session, monkeypatch, fake_redis, fake_opensearch, gateway, rating_cache, publisher,
           consumer, syncer):
    """FastAPI test client wired to the in-memory database, Redis and search engine."""

    def override_get_db():
        test_db = TestingSessionLocal()
        try:
            yield test_db
        finally:
            test_db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[search_index_module.get_search_index] = lambda: gateway
    app.dependency_overrides[cache_module.get_rating_cache] = lambda: rating_cache
    app.dependency_overrides[rating_events.get_event_publisher] = lambda: publisher
    app.dependency_overrides[sync_module.get_sync_service] = lambda: syncer

    # Module singletons used outside dependency injection (health, admin)
    monkeypatch.setattr(rating_events.event_publisher, "_redis", fake_redis)
    monkeypatch.setattr(search_index_module.search_index, "_client", fake_opensearch)
    monkeypatch.setenv("API_KEY", TEST_API_KEY)

    with TestClient(app, headers={"X-API-Key": TEST_API_KEY}) as test_client:
        yield test_client

    app.dependency_overrides.clear()
