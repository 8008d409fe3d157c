"""
Search index gateway tests
==========================
Index lifecycle, document projection, bulk failures and query execution.
"""
from datetime import date

import pytest

from app.models.movie import MovieType
from app.schemas.search import SearchCriteria
from app.services.query_compiler import compile_query
from app.services.search_index import (
    BulkIndexError,
    MOVIE_INDEX_BODY,
    SearchIndexGateway,
    SearchUnavailableError,
)


def _doc(movie_id, title="Movie", avg=0.0, count=0, movie_type="MOVIE", release="2015-01-01"):
    return {
        "id": str(movie_id),
        "title": title,
        "description": "",
        "cast": [],
        "type": movie_type,
        "releaseDate": release,
        "coverUrl": None,
        "averageRating": avg,
        "ratingCount": count,
        "createdAt": None,
        "updatedAt": None,
    }


def test_ensure_index_is_idempotent(fake_opensearch):
    gateway = SearchIndexGateway(client=fake_opensearch, index_name="movies")

    assert gateway.ensure_index() is True
    assert gateway.ensure_index() is False
    assert fake_opensearch.mappings["movies"] == MOVIE_INDEX_BODY


def test_mapping_field_types():
    properties = MOVIE_INDEX_BODY["mappings"]["properties"]

    assert properties["id"]["type"] == "keyword"
    assert properties["title"]["fields"]["keyword"]["type"] == "keyword"
    assert properties["averageRating"]["type"] == "float"
    assert properties["ratingCount"]["type"] == "integer"
    assert properties["coverUrl"]["index"] is False


def test_to_document_projects_cast_and_aggregates(make_movie):
    movie = make_movie(
        "Heat",
        description="Cops and robbers",
        release_date=date(1995, 12, 15),
        cast=["Al Pacino", "Robert De Niro"],
        avg_rating=4.256,
        ratings_count=3,
    )

    document = SearchIndexGateway.to_document(movie)

    assert document["id"] == str(movie.id)
    assert document["cast"] == ["Al Pacino", "Robert De Niro"]
    assert document["type"] == "MOVIE"
    assert document["releaseDate"] == "1995-12-15"
    assert document["averageRating"] == 4.26
    assert document["ratingCount"] == 3


def test_to_document_overrides(make_movie):
    movie = make_movie("Heat", avg_rating=1.0, ratings_count=1)

    document = SearchIndexGateway.to_document(movie, avg_rating=3.5, ratings_count=8)

    assert document["averageRating"] == 3.5
    assert document["ratingCount"] == 8


def test_bulk_upsert_reports_failed_positions(gateway, fake_opensearch):
    fake_opensearch.fail_bulk_ids = {"2"}

    with pytest.raises(BulkIndexError) as exc_info:
        gateway.bulk_upsert([_doc(1), _doc(2), _doc(3)])

    assert exc_info.value.failed_positions == [1]
    assert exc_info.value.total == 3
    # The other documents were still written
    assert gateway.count() == 2


def test_bulk_upsert_empty_is_noop(gateway):
    assert gateway.bulk_upsert([]) == 0


def test_update_aggregate_fields_missing_document_returns_false(gateway):
    assert gateway.update_aggregate_fields(99, 4.0, 2) is False


def test_update_aggregate_fields_engine_down_returns_false(gateway, fake_opensearch):
    gateway.upsert(_doc(1))
    fake_opensearch.fail_updates = True

    assert gateway.update_aggregate_fields(1, 4.0, 2) is False


def test_update_aggregate_fields(gateway):
    gateway.upsert(_doc(1, title="Alien"))

    assert gateway.update_aggregate_fields(1, 4.333, 3) is True

    document = gateway.get(1)
    assert document["averageRating"] == 4.33
    assert document["ratingCount"] == 3
    assert document["title"] == "Alien"


@pytest.mark.parametrize("as_dict", [True, False])
def test_execute_accepts_both_total_shapes(gateway, fake_opensearch, as_dict):
    fake_opensearch.total_as_dict = as_dict
    gateway.bulk_upsert([_doc(1, avg=2.0), _doc(2, avg=4.0), _doc(3, avg=3.0)])

    page = gateway.execute(compile_query(SearchCriteria()), offset=0, size=2)

    assert page.total == 3
    assert [hit["_source"]["id"] for hit in page.documents] == ["2", "3"]


def test_execute_filters_by_type(gateway):
    gateway.bulk_upsert([_doc(1, movie_type="MOVIE"), _doc(2, movie_type="TV_SHOW")])

    page = gateway.execute(compile_query(SearchCriteria(type=MovieType.TV_SHOW)))

    assert page.total == 1
    assert page.documents[0]["_source"]["id"] == "2"


def test_execute_raises_when_engine_unavailable(gateway, fake_opensearch):
    fake_opensearch.unavailable = True

    with pytest.raises(SearchUnavailableError):
        gateway.execute(compile_query(SearchCriteria()))


def test_hit_to_movie():
    hit = {"_id": "7", "_score": 12.5, "_source": _doc(7, title="Alien", avg=4.5, count=2)}

    movie = SearchIndexGateway.hit_to_movie(hit)

    assert movie["id"] == 7
    assert movie["title"] == "Alien"
    assert movie["avg_rating"] == 4.5
    assert movie["ratings_count"] == 2
    assert movie["score"] == 12.5


def test_clear_index_drops_documents(gateway):
    gateway.bulk_upsert([_doc(1), _doc(2)])

    gateway.clear_index()

    assert gateway.index_exists()
    assert gateway.count() == 0


def test_delete_document(gateway):
    gateway.upsert(_doc(1))

    assert gateway.delete(1) is True
    assert gateway.get(1) is None
    assert gateway.delete(1) is False
