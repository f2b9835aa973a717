"""
Tours: validation, slug derivation, reads with guides populated, and the
aggregate reports (stats, monthly plan, geo queries).

Secret tours are left out of every read unless the caller passes
include_secret=True.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from slugify import slugify

from database import create_document, get_documents, now, serialize_document, to_object_id
from errors import ConflictError, NotFoundError, ValidationError, from_pydantic
from schemas import Tour, TourUpdate, round_rating
import users

logger = logging.getLogger(__name__)

COLLECTION = "tour"
GUIDE_ROLES = ("guide", "lead-guide")
EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
METERS_TO = {"mi": 0.000621371, "km": 0.001}
SLUG_REPLACEMENTS = [["&", "and"]]


def tour_slug(name: str) -> str:
    return slugify(name, replacements=SLUG_REPLACEMENTS)


def validate_price_discount(candidate: Dict[str, Any]) -> Optional[str]:
    """The discount has to stay below the price. Only checked when a tour is created."""
    discount = candidate.get("price_discount")
    if discount is None:
        return None
    try:
        discount, price = float(discount), float(candidate.get("price"))
    except (TypeError, ValueError):
        return None
    if discount >= price:
        return f"Discount price ({candidate.get('price_discount')}) should be below the regular price"
    return None


def secret_filter(filter_dict: Optional[Dict[str, Any]] = None, include_secret: bool = False) -> Dict[str, Any]:
    query = dict(filter_dict or {})
    if include_secret:
        return query
    if "secret_tour" in query:
        return {"$and": [query, {"secret_tour": {"$ne": True}}]}
    query["secret_tour"] = {"$ne": True}
    return query


def _check_guides(db, guide_ids: List[str]) -> List:
    ids = [to_object_id(g, "guides") for g in guide_ids]
    if not ids:
        return ids
    found = db[users.COLLECTION].count_documents(
        users.active_filter({"_id": {"$in": ids}, "role": {"$in": list(GUIDE_ROLES)}})
    )
    if found != len(set(ids)):
        raise ValidationError("Invalid input data.", {"guides": "Guides must be active users with a guide role"})
    return ids


def _populate_guides(db, tours: List[Dict[str, Any]]) -> None:
    ids = {g for tour in tours for g in tour.get("guides", [])}
    if not ids:
        return
    # populated guides also leave out password_changed_at
    cursor = db[users.COLLECTION].find(
        users.active_filter({"_id": {"$in": list(ids)}}), users.hidden_projection("password_changed_at")
    )
    found = {g["_id"]: g for g in cursor}
    for tour in tours:
        if "guides" in tour:
            tour["guides"] = [found[g] for g in tour["guides"] if g in found]


def _present(tour: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_document(tour)
    if out.get("duration") is not None:
        out["duration_weeks"] = out["duration"] / 7
    return out


def _projection(fields: Optional[Dict[str, int]]) -> Dict[str, int]:
    if fields:
        return dict(fields)
    return {"created_at": 0, "__v": 0}


# Create

def create_tour(db, fields: Dict[str, Any]) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    tour = None
    try:
        tour = Tour(**fields)
    except PydanticValidationError as exc:
        errors.update(from_pydantic(exc))
    discount_error = validate_price_discount(fields)
    if discount_error:
        errors["price_discount"] = discount_error
    if errors:
        raise ValidationError("Invalid input data.", errors)

    doc = tour.model_dump()
    doc["guides"] = _check_guides(db, tour.guides)
    doc["slug"] = tour_slug(tour.name)
    doc["ratings_average"] = round_rating(doc["ratings_average"])
    try:
        tour_id = create_document(db, COLLECTION, doc)
    except DuplicateKeyError:
        raise ConflictError("Duplicate field value: name. Please use another value!", {"name": "Already in use"})
    logger.info("Created tour %s (%s)", tour_id, doc["slug"])
    return find_tour(db, tour_id, include_secret=True, with_reviews=False)


# Read

def find_tours(db, filter_dict=None, sort=None, skip: int = 0, limit: Optional[int] = None,
               fields: Optional[Dict[str, int]] = None, include_secret: bool = False) -> List[Dict[str, Any]]:
    start = time.monotonic()
    docs = get_documents(db, COLLECTION, secret_filter(filter_dict, include_secret), limit,
                         _projection(fields), sort, skip)
    _populate_guides(db, docs)
    logger.debug("Query took: %d milliseconds!", (time.monotonic() - start) * 1000)
    return [_present(d) for d in docs]


def find_tour(db, tour_id, include_secret: bool = False, with_reviews: bool = True) -> Dict[str, Any]:
    """One tour with guides and, unlike list reads, its reviews."""
    from reviews import find_reviews

    start = time.monotonic()
    oid = to_object_id(tour_id)
    doc = db[COLLECTION].find_one(secret_filter({"_id": oid}, include_secret), _projection(None))
    if not doc:
        raise NotFoundError("No tour found with that ID.")
    _populate_guides(db, [doc])
    logger.debug("Query took: %d milliseconds!", (time.monotonic() - start) * 1000)
    out = _present(doc)
    if with_reviews:
        out["reviews"] = find_reviews(db, {"tour": oid})
    return out


# Update / delete

def update_tour(db, tour_id, fields: Dict[str, Any], include_secret: bool = False) -> Dict[str, Any]:
    """Partial update. The slug is not rederived and the discount rule is not rechecked."""
    try:
        changes = TourUpdate(**fields).model_dump(exclude_unset=True)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid input data.", from_pydantic(exc))
    if "guides" in changes:
        changes["guides"] = _check_guides(db, changes["guides"])
    changes["updated_at"] = now()
    try:
        doc = db[COLLECTION].find_one_and_update(
            secret_filter({"_id": to_object_id(tour_id)}, include_secret),
            {"$set": changes},
            projection=_projection(None),
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Duplicate field value: name. Please use another value!", {"name": "Already in use"})
    if not doc:
        raise NotFoundError("No tour found with that ID.")
    _populate_guides(db, [doc])
    return _present(doc)


def set_ratings(db, tour_id, quantity: int, average: float) -> None:
    db[COLLECTION].update_one(
        {"_id": to_object_id(tour_id)},
        {"$set": {"ratings_quantity": quantity, "ratings_average": round_rating(average)}},
    )


def delete_tour(db, tour_id, include_secret: bool = False) -> None:
    # reviews of the tour are left in place
    doc = db[COLLECTION].find_one_and_delete(secret_filter({"_id": to_object_id(tour_id)}, include_secret))
    if not doc:
        raise NotFoundError("No tour found with that ID.")
    logger.info("Deleted tour %s", tour_id)


# Reports

def tour_stats(db, include_secret: bool = False) -> List[Dict[str, Any]]:
    pipeline = [
        {"$match": secret_filter({"ratings_average": {"$gte": 4.5}}, include_secret)},
        {
            "$group": {
                "_id": {"$toUpper": "$difficulty"},
                "num_tours": {"$sum": 1},
                "num_ratings": {"$sum": "$ratings_quantity"},
                "avg_rating": {"$avg": "$ratings_average"},
                "avg_price": {"$avg": "$price"},
                "min_price": {"$min": "$price"},
                "max_price": {"$max": "$price"},
            }
        },
        {"$sort": {"avg_price": 1}},
    ]
    return serialize_document(list(db[COLLECTION].aggregate(pipeline)))


def monthly_plan(db, year: int, include_secret: bool = False) -> List[Dict[str, Any]]:
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    pipeline = [
        {"$match": secret_filter({}, include_secret)},
        {"$unwind": "$start_dates"},
        {"$match": {"start_dates": {"$gte": start, "$lt": end}}},
        {"$group": {"_id": {"$month": "$start_dates"}, "num_tour_starts": {"$sum": 1}, "tours": {"$push": "$name"}}},
        {"$addFields": {"month": "$_id"}},
        {"$project": {"_id": 0}},
        {"$sort": {"num_tour_starts": -1}},
        {"$limit": 12},
    ]
    return list(db[COLLECTION].aggregate(pipeline))


def _parse_latlng(latlng: str):
    try:
        lat, lng = (float(part) for part in latlng.split(","))
    except ValueError:
        raise ValidationError("Please provide latitude and longitude in the format lat,lng.", {"latlng": latlng})
    return lat, lng


def _check_unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise ValidationError("Unit must be either mi or km.", {"unit": unit})
    return unit


def tours_within(db, distance: float, latlng: str, unit: str, include_secret: bool = False) -> List[Dict[str, Any]]:
    lat, lng = _parse_latlng(latlng)
    radius = distance / EARTH_RADIUS[_check_unit(unit)]
    query = {"start_location": {"$geoWithin": {"$centerSphere": [[lng, lat], radius]}}}
    return find_tours(db, query, include_secret=include_secret)


def distances(db, latlng: str, unit: str, include_secret: bool = False) -> List[Dict[str, Any]]:
    lat, lng = _parse_latlng(latlng)
    pipeline = [
        {
            "$geoNear": {
                "near": {"type": "Point", "coordinates": [lng, lat]},
                "distanceField": "distance",
                "distanceMultiplier": METERS_TO[_check_unit(unit)],
                "query": secret_filter({}, include_secret),
            }
        },
        {"$project": {"distance": 1, "name": 1}},
    ]
    return serialize_document(list(db[COLLECTION].aggregate(pipeline)))
