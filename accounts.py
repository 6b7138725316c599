"""
User accounts and password flows.

Reset tokens are persisted (hashed) in the `password_reset` collection with an
expiry, so they survive restarts and are usable exactly once.
"""
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import as_utc, create_document, now, parse_object_id
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import Role, User
from security import hash_password, verify_password

logger = logging.getLogger("storefront.accounts")


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def find_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": parse_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError("User not found")
    return user


def register_user(db: Database, name: str, email: str, password: str, role: str = Role.customer.value) -> Dict[str, Any]:
    email = email.lower()
    if not password:
        raise ValidationError("Password is required")
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already exists")
    user = User(name=name, email=email, password_hash=hash_password(password), role=role)
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("Email already exists")
    logger.info("Registered user %s with role %s", user_id, role)
    return find_user(db, user_id)


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid email or password")
    return user


def update_user(db: Database, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    user = find_user(db, user_id)
    changes: Dict[str, Any] = {}
    if fields.get("name"):
        changes["name"] = fields["name"]
    if fields.get("email"):
        email = str(fields["email"]).lower()
        other = db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}})
        if other:
            raise ConflictError("Email already exists")
        changes["email"] = email
    if fields.get("role"):
        changes["role"] = Role(fields["role"]).value
    if fields.get("password"):
        changes["password_hash"] = hash_password(fields["password"])
    if not changes:
        return user
    changes["updated_at"] = now()
    db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    return find_user(db, user_id)


def delete_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = find_user(db, user_id)
    db["user"].delete_one({"_id": user["_id"]})
    logger.info("Deleted user %s", user_id)
    return user


def change_password(db: Database, user_id: str, old_password: str, new_password: str) -> Dict[str, Any]:
    if not old_password or not new_password:
        raise ValidationError("Old and new passwords required")
    user = find_user(db, user_id)
    if not verify_password(old_password, user.get("password_hash", "")):
        raise AuthenticationError("Old password is incorrect")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"password_hash": hash_password(new_password), "updated_at": now()}})
    return user


def set_profile_image(db: Database, user_id: str, path: str) -> Optional[str]:
    """Store the new image path and return the previous one."""
    user = find_user(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"profile_image": path, "updated_at": now()}})
    return user.get("profile_image")


def issue_reset_token(db: Database, user: Dict[str, Any]) -> str:
    token = secrets.token_hex(32)
    db["password_reset"].insert_one({
        "token_hash": _hash_token(token),
        "user_id": user["_id"],
        "expires_at": now() + timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES),
        "created_at": now(),
    })
    return token


def reset_password(db: Database, token: str, new_password: str) -> Dict[str, Any]:
    if not token or not new_password:
        raise ValidationError("Token and new password required")
    # Deleting on lookup makes the token single use
    entry = db["password_reset"].find_one_and_delete({"token_hash": _hash_token(token)})
    if not entry or as_utc(entry["expires_at"]) <= now():
        raise ValidationError("Invalid or expired token")
    user = db["user"].find_one({"_id": entry["user_id"]})
    if not user:
        raise NotFoundError("User not found")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"password_hash": hash_password(new_password), "updated_at": now()}})
    logger.info("Password reset for user %s", user["_id"])
    return user
