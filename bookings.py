"""
Bookings and the Stripe Checkout integration.

A booking is written when Stripe reports `checkout.session.completed` on
the webhook; admins and lead guides can also manage bookings directly.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from database import create_document, get_documents, now, serialize_document, to_object_id
from errors import AuthError, NotFoundError, PaymentError, ValidationError, from_pydantic
from schemas import Booking, BookingUpdate
import settings
import tours
import users

logger = logging.getLogger(__name__)

COLLECTION = "booking"


# Stripe

def create_checkout_session(tour: Dict[str, Any], user: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    """Create a Stripe Checkout session for one seat on `tour`."""
    if not settings.STRIPE_SECRET_KEY:
        raise PaymentError("Payments are not configured")
    base_url = base_url.rstrip("/")
    data = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "success_url": f"{base_url}/my-tours?alert=booking",
        "cancel_url": f"{base_url}/tour/{tour.get('slug')}",
        "customer_email": user["email"],
        "client_reference_id": tour["id"],
        "line_items[0][quantity]": 1,
        "line_items[0][price_data][currency]": "usd",
        "line_items[0][price_data][unit_amount]": int(round(tour["price"] * 100)),
        "line_items[0][price_data][product_data][name]": f"{tour['name']} Tour",
        "line_items[0][price_data][product_data][description]": tour.get("summary") or "",
        "line_items[0][price_data][product_data][images][0]": f"{base_url}/img/tours/{tour.get('image_cover')}",
    }
    try:
        resp = requests.post(
            f"{settings.STRIPE_API_URL}/checkout/sessions",
            data=data,
            auth=(settings.STRIPE_SECRET_KEY, ""),
            timeout=10,
        )
    except requests.RequestException as exc:
        logger.error("Stripe request failed: %s", exc)
        raise PaymentError("Could not reach the payment provider")
    if resp.status_code != 200:
        logger.error("Stripe rejected checkout session (%s): %s", resp.status_code, resp.text[:200])
        raise PaymentError("Could not create checkout session")
    return resp.json()


def verify_webhook(payload: bytes, signature_header: Optional[str], secret: Optional[str] = None,
                   tolerance: int = settings.STRIPE_WEBHOOK_TOLERANCE) -> Dict[str, Any]:
    """Check a Stripe-Signature header (t=...,v1=...) and return the decoded event."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret or not signature_header:
        raise AuthError("Webhook signature verification failed")
    timestamp, signatures = None, []
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not timestamp.isdigit() or not signatures:
        raise AuthError("Webhook signature verification failed")
    signed = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise AuthError("Webhook signature verification failed")
    if abs(time.time() - int(timestamp)) > tolerance:
        raise AuthError("Webhook timestamp outside the tolerance zone")
    try:
        return json.loads(payload)
    except ValueError:
        raise ValidationError("Webhook payload is not valid JSON")


def create_booking_checkout(db, session: Dict[str, Any]) -> Dict[str, Any]:
    user = db[users.COLLECTION].find_one({"email": (session.get("customer_email") or "").lower()}, {"_id": 1})
    if not user:
        raise NotFoundError("No user found for this checkout session.")
    price = (session.get("amount_total") or 0) / 100
    booking = create_booking(db, {"tour": session.get("client_reference_id"), "user": str(user["_id"]), "price": price})
    logger.info("Booking %s created from checkout session %s", booking["id"], session.get("id"))
    return booking


# CRUD

def _populate(db, bookings: List[Dict[str, Any]]) -> None:
    user_ids = {b["user"] for b in bookings if b.get("user") is not None}
    tour_ids = {b["tour"] for b in bookings if b.get("tour") is not None}
    found_users = {
        u["_id"]: u
        for u in db[users.COLLECTION].find(users.active_filter({"_id": {"$in": list(user_ids)}}), users.hidden_projection())
    } if user_ids else {}
    found_tours = {
        t["_id"]: t for t in db[tours.COLLECTION].find({"_id": {"$in": list(tour_ids)}}, {"name": 1})
    } if tour_ids else {}
    for booking in bookings:
        booking["user"] = found_users.get(booking.get("user"))
        booking["tour"] = found_tours.get(booking.get("tour"))


def create_booking(db, fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        booking = Booking(**fields)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid input data.", from_pydantic(exc))
    doc = booking.model_dump()
    doc["tour"] = to_object_id(booking.tour, "tour")
    doc["user"] = to_object_id(booking.user, "user")
    if not db[tours.COLLECTION].find_one({"_id": doc["tour"]}, {"_id": 1}):
        raise NotFoundError("No tour found with that ID.")
    if not db[users.COLLECTION].find_one({"_id": doc["user"]}, {"_id": 1}):
        raise NotFoundError("No user found with that ID.")
    booking_id = create_document(db, COLLECTION, doc)
    return find_booking(db, booking_id)


def find_booking(db, booking_id) -> Dict[str, Any]:
    doc = db[COLLECTION].find_one({"_id": to_object_id(booking_id)})
    if not doc:
        raise NotFoundError("No booking found with that ID.")
    _populate(db, [doc])
    return serialize_document(doc)


def find_bookings(db, filter_dict=None, sort=None, skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    query = dict(filter_dict or {})
    for ref in ("tour", "user"):
        if isinstance(query.get(ref), str):
            query[ref] = to_object_id(query[ref], ref)
    docs = get_documents(db, COLLECTION, query, limit, None, sort, skip)
    _populate(db, docs)
    return serialize_document(docs)


def update_booking(db, booking_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        changes = BookingUpdate(**fields).model_dump(exclude_unset=True)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid input data.", from_pydantic(exc))
    changes["updated_at"] = now()
    doc = db[COLLECTION].find_one_and_update(
        {"_id": to_object_id(booking_id)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("No booking found with that ID.")
    _populate(db, [doc])
    return serialize_document(doc)


def delete_booking(db, booking_id) -> None:
    result = db[COLLECTION].delete_one({"_id": to_object_id(booking_id)})
    if result.deleted_count == 0:
        raise NotFoundError("No booking found with that ID.")


def find_user_tours(db, user_id) -> List[Dict[str, Any]]:
    """Tours the user has booked."""
    tour_ids = [b["tour"] for b in db[COLLECTION].find({"user": to_object_id(user_id)}, {"tour": 1})]
    if not tour_ids:
        return []
    return tours.find_tours(db, {"_id": {"$in": tour_ids}})
