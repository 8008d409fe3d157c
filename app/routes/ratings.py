"""
Rating Routes - change or withdraw an existing rating
New ratings are created through POST /movies/{id}/rate
"""

from fastapi import APIRouter, Depends, Path, Query

from app.schemas.rating import RatingUpdate, RateMovieResponse
from app.services.rating_service import RatingService, get_rating_service
from app.utils.dependencies import require_api_key

router = APIRouter(prefix="/ratings", tags=["Ratings"], dependencies=[Depends(require_api_key)])


# ==================== RATING CRUD ENDPOINTS ====================

@router.put("/{rating_id}", response_model=RateMovieResponse)
def update_rating(
    rating_data: RatingUpdate,
    rating_id: int = Path(..., description="Rating ID", gt=0),
    service: RatingService = Depends(get_rating_service)
):
    """
    Change the stars of a rating

    - **stars**: 1 to 5 (required)
    - **sourceId**: the token the rating was submitted with (required)

    Only the source that created the rating can change it.
    """
    rating, movie = service.update_rating(rating_id, rating_data.stars, rating_data.source_id)
    return {
        "success": True,
        "data": {"rating": rating, "movie": movie},
        "message": "Rating updated successfully"
    }


@router.delete("/{rating_id}")
def delete_rating(
    rating_id: int = Path(..., description="Rating ID to delete", gt=0),
    source_id: str = Query(..., alias="sourceId", min_length=1, max_length=255),
    service: RatingService = Depends(get_rating_service)
):
    """
    Delete a rating by ID

    Only the source that created the rating can delete it.
    Returns the movie's refreshed aggregates.
    """
    movie = service.delete_rating(rating_id, source_id)
    return {
        "success": True,
        "data": {
            "movieId": movie.id,
            "avgRating": movie.avg_rating,
            "ratingsCount": movie.ratings_count
        },
        "message": "Rating deleted successfully"
    }
