"""
Bulk sync tests
===============
Paging through the store, partial bulk failures, the job registry and the
startup consistency check.
"""
from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.models.movie import MovieType
from app.models.rating import Rating
from app.schemas.sync import SyncOptions
from app.services.query_compiler import compile_top_rated
from app.services.rating_service import RatingService


def _seed(make_movie, count):
    return [make_movie(f"Movie {i}", cast=[f"Actor {i}"]) for i in range(count)]


def test_full_sync_indexes_every_movie_in_batches(syncer, gateway, make_movie, fake_opensearch):
    _seed(make_movie, 7)

    job = syncer.start(SyncOptions(batch_size=3))
    syncer.run(job.sync_id)

    status = syncer.get_status(job.sync_id)
    assert status["is_running"] is False
    assert status["total_records"] == 7
    assert status["processed_records"] == 7
    assert status["progress"] == 100
    assert status["errors"] == []
    assert gateway.count() == 7


def test_sync_ratings_recomputes_from_ratings_table(syncer, gateway, make_movie, db_session):
    # Stored aggregates are stale on purpose
    movie = make_movie("Alien", avg_rating=1.0, ratings_count=10)
    db_session.add_all([Rating(movie_id=movie.id, stars=5), Rating(movie_id=movie.id, stars=4)])
    db_session.commit()

    job = syncer.start(SyncOptions(sync_ratings=True))
    syncer.run(job.sync_id)

    document = gateway.get(movie.id)
    assert document["averageRating"] == 4.5
    assert document["ratingCount"] == 2


def test_sync_without_ratings_uses_stored_fields(syncer, gateway, make_movie):
    movie = make_movie("Alien", avg_rating=3.25, ratings_count=4)

    job = syncer.start(SyncOptions(sync_ratings=False))
    syncer.run(job.sync_id)

    assert gateway.get(movie.id)["averageRating"] == 3.25


def test_partial_bulk_failure_is_recorded_and_run_continues(syncer, gateway, make_movie, fake_opensearch):
    movies = _seed(make_movie, 5)
    fake_opensearch.fail_bulk_ids = {str(movies[1].id)}

    job = syncer.start(SyncOptions(batch_size=2))
    syncer.run(job.sync_id)

    status = syncer.get_status(job.sync_id)
    assert status["processed_records"] == 5
    assert status["failed_documents"] == 1
    assert len(status["errors"]) == 1
    assert str(movies[1].id) in status["errors"][0]
    assert status["current_operation"] == "Completed with errors"
    assert gateway.count() == 4


def test_delete_existing_clears_stale_documents(syncer, gateway, make_movie):
    make_movie("Alien")
    gateway.upsert({"id": "999", "title": "Stale"})

    job = syncer.start(SyncOptions(delete_existing=True))
    syncer.run(job.sync_id)

    assert gateway.get(999) is None
    assert gateway.count() == 1


def test_second_start_while_running_is_rejected(syncer):
    syncer.start()

    with pytest.raises(HTTPException) as exc_info:
        syncer.start()

    assert exc_info.value.status_code == 400


def test_status_latest_and_unknown(syncer, make_movie):
    make_movie("Alien")
    with pytest.raises(HTTPException) as exc_info:
        syncer.get_status()
    assert exc_info.value.status_code == 404

    first = syncer.start()
    syncer.run(first.sync_id)
    second = syncer.start()
    syncer.run(second.sync_id)

    assert syncer.get_status()["sync_id"] == second.sync_id
    assert syncer.get_status(first.sync_id)["sync_id"] == first.sync_id

    with pytest.raises(HTTPException):
        syncer.get_status("sync-missing")


def test_check_and_sync_creates_missing_index(syncer, gateway, fake_opensearch, make_movie):
    _seed(make_movie, 3)
    fake_opensearch.indices.delete(index="movies")

    sync_id = syncer.check_and_sync()

    assert sync_id is not None
    assert gateway.count() == 3


def test_check_and_sync_skips_when_counts_match(syncer, make_movie):
    _seed(make_movie, 2)
    job = syncer.start()
    syncer.run(job.sync_id)

    assert syncer.check_and_sync() is None


def test_check_and_sync_resyncs_on_count_mismatch(syncer, gateway, make_movie):
    _seed(make_movie, 2)
    job = syncer.start()
    syncer.run(job.sync_id)
    make_movie("Late Arrival")

    assert syncer.check_and_sync() is not None
    assert gateway.count() == 3


def test_synced_documents_answer_top_rated_query(syncer, gateway, make_movie, db_session):
    alien = make_movie("Alien")
    aliens = make_movie("Aliens")
    series = make_movie("Stranger Things", movie_type=MovieType.TV_SHOW)
    db_session.add_all([
        Rating(movie_id=alien.id, stars=5),
        Rating(movie_id=alien.id, stars=4),
        Rating(movie_id=alien.id, stars=4),
        Rating(movie_id=aliens.id, stars=3),
        Rating(movie_id=series.id, stars=5),
    ])
    db_session.commit()

    job = syncer.start(SyncOptions(sync_ratings=True))
    syncer.run(job.sync_id)

    page = gateway.execute(compile_top_rated(MovieType.MOVIE))

    assert page.total == 2
    hits = [hit["_source"] for hit in page.documents]
    assert [(hit["id"], hit["title"], hit["averageRating"]) for hit in hits] == [
        (str(alien.id), "Alien", 4.33),
        (str(aliens.id), "Aliens", 3.0),
    ]
    for hit in hits:
        stats = RatingService.compute_movie_stats(db_session, int(hit["id"]))
        assert hit["averageRating"] == stats["average_rating"]
        assert hit["ratingCount"] == stats["total_ratings"]


def test_job_timestamps_are_utc_aware(syncer, make_movie):
    make_movie("Alien")

    job = syncer.start()
    syncer.run(job.sync_id)

    status = syncer.get_status(job.sync_id)
    assert status["started_at"].utcoffset() == timedelta(0)
    assert status["finished_at"].utcoffset() == timedelta(0)
    assert status["finished_at"] >= status["started_at"]
