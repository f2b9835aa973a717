"""
Reviews and the tour rating aggregate.

Every create, update and delete recomputes the tour's ratings_quantity and
ratings_average before returning. Update and delete read the review first so
the tour id is still known once the review is gone.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents, now, serialize_document, to_object_id
from errors import ConflictError, NotFoundError, ValidationError, from_pydantic
from schemas import DEFAULT_RATING, Review, ReviewUpdate
import tours
import users

logger = logging.getLogger(__name__)

COLLECTION = "review"


def calc_average_ratings(db, tour_id) -> Optional[Tuple[int, float]]:
    """Recompute a tour's rating fields from its reviews.

    Returns (quantity, average), or None when the database failed; the
    failure is logged and not raised because the review write has already
    happened.
    """
    tour_oid = to_object_id(tour_id)
    try:
        stats = list(db[COLLECTION].aggregate([
            {"$match": {"tour": tour_oid}},
            {"$group": {"_id": "$tour", "n_ratings": {"$sum": 1}, "avg_rating": {"$avg": "$rating"}}},
        ]))
        if stats:
            quantity, average = stats[0]["n_ratings"], stats[0]["avg_rating"]
            if average is None:
                average = DEFAULT_RATING
        else:
            # no reviews left: back to the default instead of 0
            quantity, average = 0, DEFAULT_RATING
        tours.set_ratings(db, tour_oid, quantity, average)
    except PyMongoError:
        logger.exception("Could not recompute ratings for tour %s", tour_oid)
        return None
    return quantity, average


def _populate_users(db, reviews: List[Dict[str, Any]]) -> None:
    ids = {r["user"] for r in reviews if r.get("user") is not None}
    if not ids:
        return
    found = {
        u["_id"]: u
        for u in db[users.COLLECTION].find(users.active_filter({"_id": {"$in": list(ids)}}), {"name": 1, "photo": 1})
    }
    for review in reviews:
        review["user"] = found.get(review.get("user"))


def _validate(model, fields: Dict[str, Any], **dump_kwargs) -> Dict[str, Any]:
    try:
        return model(**fields).model_dump(**dump_kwargs)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid input data.", from_pydantic(exc))


def create_review(db, tour_id, user_id, review: Optional[str], rating: Optional[float] = None) -> Dict[str, Any]:
    data = _validate(Review, {"review": review, "rating": rating})
    tour_oid = to_object_id(tour_id, "tour")
    user_oid = to_object_id(user_id, "user")
    if not db[tours.COLLECTION].find_one({"_id": tour_oid}, {"_id": 1}):
        raise NotFoundError("No tour found with that ID.")
    if not db[users.COLLECTION].find_one({"_id": user_oid}, {"_id": 1}):
        raise NotFoundError("No user found with that ID.")
    data.update(tour=tour_oid, user=user_oid)
    try:
        review_id = create_document(db, COLLECTION, data)
    except DuplicateKeyError:
        raise ConflictError("You have already reviewed this tour.", {"tour": "Already reviewed by this user"})
    calc_average_ratings(db, tour_oid)
    return find_review(db, review_id)


def find_review_record(db, review_id) -> Optional[Dict[str, Any]]:
    return db[COLLECTION].find_one({"_id": to_object_id(review_id)})


def find_review(db, review_id) -> Dict[str, Any]:
    doc = find_review_record(db, review_id)
    if not doc:
        raise NotFoundError("No review found with that ID.")
    _populate_users(db, [doc])
    return serialize_document(doc)


def find_reviews(db, filter_dict=None, sort=None, skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    query = dict(filter_dict or {})
    for ref in ("tour", "user"):
        if isinstance(query.get(ref), str):
            query[ref] = to_object_id(query[ref], ref)
    docs = get_documents(db, COLLECTION, query, limit, None, sort, skip)
    _populate_users(db, docs)
    return serialize_document(docs)


def update_review(db, review_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    current = find_review_record(db, review_id)
    if not current:
        raise NotFoundError("No review found with that ID.")
    changes = _validate(ReviewUpdate, fields, exclude_unset=True)
    changes["updated_at"] = now()
    doc = db[COLLECTION].find_one_and_update(
        {"_id": current["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    calc_average_ratings(db, current["tour"])
    if not doc:
        raise NotFoundError("No review found with that ID.")
    _populate_users(db, [doc])
    return serialize_document(doc)


def delete_review(db, review_id) -> None:
    current = find_review_record(db, review_id)
    if not current:
        raise NotFoundError("No review found with that ID.")
    db[COLLECTION].delete_one({"_id": current["_id"]})
    calc_average_ratings(db, current["tour"])
