"""
Rating consumer tests
=====================
Coalescing, acknowledgement, redelivery after failure, poison entries and
idempotent recomputation.
"""
from app.models.movie import Movie
from app.models.rating import Rating
from app.schemas.events import RatingCreated, RatingDeleted, encode_event
from app.services.search_index import SearchIndexGateway


def _add_rating(db_session, movie_id, stars):
    """Insert a rating without touching the movie's aggregate fields"""
    rating = Rating(movie_id=movie_id, stars=stars)
    db_session.add(rating)
    db_session.commit()
    return rating


def _pending(fake_redis):
    return fake_redis.xpending("rating-events", "rating-consumers")["pending"]


def _reload(db_session, movie_id):
    """Read the movie as the consumer left it"""
    db_session.expire_all()
    return db_session.query(Movie).filter(Movie.id == movie_id).first()


def test_poll_with_empty_stream(consumer):
    assert consumer.poll_once() == 0


def test_recomputes_aggregates_and_updates_index(consumer, publisher, gateway, db_session, make_movie):
    movie = make_movie("Alien", cast=["Sigourney Weaver"])
    gateway.upsert(SearchIndexGateway.to_document(movie))

    rating = _add_rating(db_session, movie.id, 5)
    _add_rating(db_session, movie.id, 4)
    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=5))

    assert consumer.poll_once() == 1

    stored = _reload(db_session, movie.id)
    assert stored.avg_rating == 4.5
    assert stored.ratings_count == 2

    document = gateway.get(movie.id)
    assert document["averageRating"] == 4.5
    assert document["ratingCount"] == 2


def test_events_for_same_movie_are_coalesced(consumer, publisher, gateway, db_session, make_movie, fake_redis):
    movie = make_movie("Alien")
    gateway.upsert(SearchIndexGateway.to_document(movie))
    calls = []
    original = consumer.recompute_movie

    def counting(movie_id):
        calls.append(movie_id)
        return original(movie_id)

    consumer.recompute_movie = counting
    for stars in (1, 2, 3):
        rating = _add_rating(db_session, movie.id, stars)
        publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=stars))

    assert consumer.poll_once() == 3
    assert calls == [movie.id]
    assert _pending(fake_redis) == 0


def test_missing_index_document_falls_back_to_upsert(consumer, publisher, gateway, db_session, make_movie):
    movie = make_movie("Alien", cast=["Sigourney Weaver"])
    rating = _add_rating(db_session, movie.id, 3)
    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=3))

    consumer.poll_once()

    document = gateway.get(movie.id)
    assert document["title"] == "Alien"
    assert document["cast"] == ["Sigourney Weaver"]
    assert document["averageRating"] == 3.0


def test_failure_leaves_entries_pending_and_redelivers(consumer, publisher, gateway, fake_opensearch,
                                                       db_session, make_movie, fake_redis):
    movie = make_movie("Alien")
    rating = _add_rating(db_session, movie.id, 2)
    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=2))

    # Document missing and the engine refuses writes: nothing can be indexed
    fake_opensearch.fail_writes = True
    assert consumer.poll_once() == 0
    assert _pending(fake_redis) == 1

    # Engine back: the pending entry is read again and acknowledged
    fake_opensearch.fail_writes = False
    assert consumer.poll_once() == 1
    assert _pending(fake_redis) == 0
    assert gateway.get(movie.id)["averageRating"] == 2.0


def test_failure_of_one_movie_does_not_block_others(consumer, publisher, gateway, fake_opensearch,
                                                    db_session, make_movie, fake_redis):
    indexed = make_movie("Indexed")
    missing = make_movie("Missing")
    gateway.upsert(SearchIndexGateway.to_document(indexed))
    fake_opensearch.fail_writes = True

    for movie in (indexed, missing):
        rating = _add_rating(db_session, movie.id, 4)
        publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=4))

    # Partial update works for the indexed movie; the other needs a full write
    assert consumer.poll_once() == 1
    assert _pending(fake_redis) == 1


def test_unparseable_entries_are_acknowledged(consumer, fake_redis):
    fake_redis.xadd("rating-events", {"data": "not json"})
    fake_redis.xadd("rating-events", {"data": '{"operation": "EXPLODE", "movie_id": 1}'})
    fake_redis.xadd("rating-events", {"other": "field"})

    assert consumer.poll_once() == 3
    assert _pending(fake_redis) == 0
    assert consumer.stats["discarded"] == 3


def test_event_for_deleted_movie_is_acknowledged(consumer, publisher, fake_redis):
    publisher.publish(RatingCreated(movie_id=424242, rating_id=1, stars=5))

    assert consumer.poll_once() == 1
    assert _pending(fake_redis) == 0


def test_duplicate_delivery_is_idempotent(consumer, publisher, gateway, db_session, make_movie):
    movie = make_movie("Alien")
    gateway.upsert(SearchIndexGateway.to_document(movie))
    rating = _add_rating(db_session, movie.id, 5)
    event = RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=5)

    publisher.publish(event)
    consumer.poll_once()
    publisher.publish(event)
    consumer.poll_once()

    stored = _reload(db_session, movie.id)
    assert stored.avg_rating == 5.0
    assert stored.ratings_count == 1


def test_delete_event_zeroes_aggregates(consumer, publisher, gateway, db_session, make_movie):
    movie = make_movie("Alien", avg_rating=4.0, ratings_count=1)
    gateway.upsert(SearchIndexGateway.to_document(movie))

    publisher.publish(RatingDeleted(movie_id=movie.id, rating_id=9))
    consumer.poll_once()

    stored = _reload(db_session, movie.id)
    assert stored.avg_rating == 0.0
    assert stored.ratings_count == 0
    assert gateway.get(movie.id)["ratingCount"] == 0


def test_recompute_refreshes_cache(consumer, publisher, rating_cache, db_session, make_movie, gateway):
    movie = make_movie("Alien")
    gateway.upsert(SearchIndexGateway.to_document(movie))
    rating_cache.set_stats(movie.id, {"average_rating": 1.0, "total_ratings": 99})
    rating = _add_rating(db_session, movie.id, 3)

    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=3))
    consumer.poll_once()

    cached = rating_cache.get_stats(movie.id)
    assert cached["total_ratings"] == 1
    assert cached["average_rating"] == 3.0


def test_encoded_event_round_trip_field():
    payload = encode_event(RatingCreated(movie_id=1, rating_id=2, stars=3))
    assert '"operation":"CREATE"' in payload


def test_failing_movie_does_not_starve_other_movies(consumer, publisher, gateway, fake_opensearch,
                                                    db_session, make_movie, fake_redis):
    # Never indexed and writes refused: the full-upsert fallback fails every time
    stuck = make_movie("Stuck")
    rating = _add_rating(db_session, stuck.id, 1)
    publisher.publish(RatingCreated(movie_id=stuck.id, rating_id=rating.id, stars=1))
    fake_opensearch.fail_writes = True
    assert consumer.poll_once() == 0

    healthy = make_movie("Healthy")
    # Seeded straight into the engine; only new writes are refused
    fake_opensearch.indexes.setdefault("movies", {})[str(healthy.id)] = SearchIndexGateway.to_document(healthy)
    rating = _add_rating(db_session, healthy.id, 5)
    publisher.publish(RatingCreated(movie_id=healthy.id, rating_id=rating.id, stars=5))

    for _ in range(5):
        consumer.poll_once()

    assert gateway.get(healthy.id)["ratingCount"] == 1
    assert gateway.get(healthy.id)["averageRating"] == 5.0
    assert consumer.stats["acknowledged"] == 1
    assert _pending(fake_redis) == 1


def test_pending_list_is_not_reread_before_retry_delay(consumer, publisher, fake_opensearch,
                                                       db_session, make_movie, fake_redis):
    movie = make_movie("Stuck")
    rating = _add_rating(db_session, movie.id, 2)
    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=2))
    fake_opensearch.fail_writes = True
    consumer.retry_ms = 60000

    consumer.poll_once()
    failures = consumer.stats["failed_movies"]
    for _ in range(3):
        assert consumer.poll_once() == 0

    # Only new entries were asked for; the failed one waits for the retry delay
    assert consumer.stats["failed_movies"] == failures == 1
    assert _pending(fake_redis) == 1


def test_batch_timestamp_is_utc(consumer, publisher, db_session, make_movie):
    movie = make_movie("Alien")
    rating = _add_rating(db_session, movie.id, 4)
    publisher.publish(RatingCreated(movie_id=movie.id, rating_id=rating.id, stars=4))

    consumer.poll_once()

    assert consumer.stats["last_batch_at"].endswith("+00:00")
