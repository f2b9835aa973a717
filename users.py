"""
User accounts: creation, credential checks, password changes and resets,
soft delete.

Reads hide soft-deleted users (active == false) unless called with
include_inactive=True, and never return credential fields.
"""
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, get_documents, now, serialize_document, to_object_id
from errors import AuthError, ConflictError, NotFoundError, ValidationError, from_pydantic
from schemas import User, UserUpdate
import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)

COLLECTION = "user"
# fields that never leave the database through a normal read
HIDDEN_FIELDS = frozenset({"password_hash", "password_reset_token", "password_reset_expires", "active", "__v"})


def hidden_projection(*extra: str) -> Dict[str, int]:
    """A fresh exclusion projection; drivers may add keys to the dict they are given."""
    return {field: 0 for field in HIDDEN_FIELDS.union(extra)}


def active_filter(filter_dict: Optional[Dict[str, Any]] = None, include_inactive: bool = False) -> Dict[str, Any]:
    query = dict(filter_dict or {})
    if include_inactive:
        return query
    if "active" in query:
        return {"$and": [query, {"active": {"$ne": False}}]}
    query["active"] = {"$ne": False}
    return query


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def correct_password(candidate_password: str, user_password: Optional[str]) -> bool:
    if not user_password:
        return False
    return pwd_context.verify(candidate_password, user_password)


def changed_password_after(user: Dict[str, Any], timestamp: int) -> bool:
    """True if the password was changed after `timestamp` (epoch seconds, e.g. a token's iat)."""
    changed_at = user.get("password_changed_at")
    if changed_at:
        return int(as_utc(changed_at).timestamp()) > timestamp
    return False


def create_password_reset_token() -> Tuple[str, str, Any]:
    """Returns (token sent to the user, sha256 hex digest to store, expiry)."""
    reset_token = secrets.token_bytes(32).hex()
    hashed = hashlib.sha256(reset_token.encode("utf-8")).hexdigest()
    expires = now() + timedelta(minutes=settings.PASSWORD_RESET_TTL_MINUTES)
    return reset_token, hashed, expires


def _validate_new_password(password: str, password_confirm: str) -> None:
    errors = {}
    if not password or len(password) < 8:
        errors["password"] = "Password must have at least 8 characters"
    if password != password_confirm:
        errors["password_confirm"] = "Passwords are not the same"
    if errors:
        raise ValidationError("Invalid input data.", errors)


def _password_changes(password: str) -> Dict[str, Any]:
    # backdated one second so a token issued right after the change is still newer
    return {
        "password_hash": hash_password(password),
        "password_changed_at": now() - timedelta(seconds=1),
        "updated_at": now(),
    }


def public(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return serialize_document({k: v for k, v in user.items() if k not in HIDDEN_FIELDS})


# Create / read

def create_user(db, fields: Dict[str, Any]) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    user = None
    try:
        user = User(**fields)
    except PydanticValidationError as exc:
        errors.update(from_pydantic(exc))
    if fields.get("password_confirm") is not None and fields.get("password") != fields.get("password_confirm"):
        errors.setdefault("password_confirm", "Passwords are not the same")
    if errors:
        raise ValidationError("Invalid input data.", errors)

    doc = {
        "name": user.name,
        "email": str(user.email).lower(),
        "photo": user.photo,
        "role": user.role,
        "password_hash": hash_password(user.password),
        "active": True,
    }
    try:
        user_id = create_document(db, COLLECTION, doc)
    except DuplicateKeyError:
        raise ConflictError("Email already registered. Please use another value!", {"email": "Already in use"})
    logger.info("Created user %s (%s)", user_id, user.role)
    return find_user(db, user_id)


def find_user_record(db, user_id, include_inactive: bool = False) -> Optional[Dict[str, Any]]:
    """Raw document including credential fields, for internal checks."""
    return db[COLLECTION].find_one(active_filter({"_id": to_object_id(user_id)}, include_inactive))


def find_user(db, user_id, include_inactive: bool = False) -> Dict[str, Any]:
    projection = hidden_projection()
    if include_inactive:
        projection.pop("active")
    user = db[COLLECTION].find_one(active_filter({"_id": to_object_id(user_id)}, include_inactive), projection)
    if not user:
        raise NotFoundError("No user found with that ID.")
    return serialize_document(user)


def find_users(db, filter_dict=None, sort=None, skip: int = 0, limit: Optional[int] = None,
               include_inactive: bool = False) -> List[Dict[str, Any]]:
    projection = hidden_projection()
    if include_inactive:
        projection.pop("active")
    docs = get_documents(db, COLLECTION, active_filter(filter_dict, include_inactive), limit, projection, sort, skip)
    return serialize_document(docs)


# Credentials

def authenticate(db, email: str, password: str) -> Dict[str, Any]:
    if not email or not password:
        raise ValidationError("Please provide email and password!")
    user = db[COLLECTION].find_one(active_filter({"email": email.lower()}))
    if not user or not correct_password(password, user.get("password_hash")):
        logger.info("Failed login for %s", email.lower())
        raise AuthError("Incorrect email or password")
    return user


def change_password(db, user_id, password_current: str, password: str, password_confirm: str) -> Dict[str, Any]:
    user = find_user_record(db, user_id)
    if not user:
        raise NotFoundError("No user found with that ID.")
    if not correct_password(password_current or "", user.get("password_hash")):
        raise AuthError("Your current password is wrong.")
    _validate_new_password(password, password_confirm)
    db[COLLECTION].update_one({"_id": user["_id"]}, {"$set": _password_changes(password)})
    logger.info("Password changed for user %s", user["_id"])
    return find_user_record(db, user_id)


def request_password_reset(db, email: str) -> str:
    user = db[COLLECTION].find_one(active_filter({"email": (email or "").lower()}))
    if not user:
        raise NotFoundError("There is no user with that email address.")
    reset_token, hashed, expires = create_password_reset_token()
    db[COLLECTION].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_reset_token": hashed, "password_reset_expires": expires}},
    )
    return reset_token


def reset_password(db, token: str, password: str, password_confirm: str) -> Dict[str, Any]:
    hashed = hashlib.sha256((token or "").encode("utf-8")).hexdigest()
    user = db[COLLECTION].find_one(active_filter({"password_reset_token": hashed}))
    expires = as_utc(user.get("password_reset_expires")) if user else None
    if not user or expires is None or now() >= expires:
        raise AuthError("Token is invalid or has expired")
    _validate_new_password(password, password_confirm)
    db[COLLECTION].update_one(
        {"_id": user["_id"]},
        {
            "$set": _password_changes(password),
            "$unset": {"password_reset_token": "", "password_reset_expires": ""},
        },
    )
    return find_user_record(db, user["_id"])


# Updates

def _validated_changes(fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        changes = UserUpdate(**fields).model_dump(exclude_unset=True)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid input data.", from_pydantic(exc))
    if "email" in changes:
        changes["email"] = str(changes["email"]).lower()
    return changes


def update_user(db, user_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    if "password" in fields or "password_confirm" in fields:
        raise ValidationError("This route is not for password updates.", {"password": "Not allowed here"})
    changes = _validated_changes(fields)
    if not changes:
        return find_user(db, user_id)
    changes["updated_at"] = now()
    try:
        user = db[COLLECTION].find_one_and_update(
            active_filter({"_id": to_object_id(user_id)}),
            {"$set": changes},
            projection=hidden_projection(),
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Email already registered. Please use another value!", {"email": "Already in use"})
    if not user:
        raise NotFoundError("No user found with that ID.")
    return serialize_document(user)


def update_me(db, user_id, fields: Dict[str, Any]) -> Dict[str, Any]:
    """A user may only change their own name and email here."""
    if "password" in fields or "password_confirm" in fields:
        raise ValidationError(
            "This route is not for password updates. Please use /update-my-password.",
            {"password": "Not allowed here"},
        )
    allowed = {k: v for k, v in fields.items() if k in ("name", "email")}
    return update_user(db, user_id, allowed)


def deactivate(db, user_id) -> None:
    result = db[COLLECTION].update_one(
        active_filter({"_id": to_object_id(user_id)}),
        {"$set": {"active": False, "updated_at": now()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("No user found with that ID.")
    logger.info("Deactivated user %s", user_id)


def delete_user(db, user_id) -> None:
    result = db[COLLECTION].delete_one({"_id": to_object_id(user_id)})
    if result.deleted_count == 0:
        raise NotFoundError("No user found with that ID.")
