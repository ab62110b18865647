"""
Identity & session: password hashing, bearer tokens and account administration.

Tokens are signed JWTs carrying the principal id; there is no server-side
session store, so verification only re-checks the signature, the expiry and
that the principal still exists and is approved.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError as SchemaError
from pymongo.errors import PyMongoError

from access import Principal, require_role
from config import Settings
from database import Database, is_duplicate_key, object_id, serialize, utcnow
from errors import (
    DuplicateIdentity,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    PendingApproval,
    ValidationError,
)
from notifications import NotificationFanout
from pagination import Page, paginate
from schemas import YEARS, SystemAnnouncementPayload, User

LOGGER = logging.getLogger(__name__)

COLLECTION = "user"
MIN_PASSWORD_LENGTH = 6

APPROVED_MESSAGE = "Your account has been approved. You can now use all the features."
REJECTED_MESSAGE = "Your account approval has been revoked. Please contact the administrator."


class TokenIssuer:
    """Signs and checks time-boxed bearer tokens."""

    def __init__(self, settings: Settings):
        self._secret = settings.secret_key
        self._algorithm = settings.jwt_algorithm
        self._lifetime = timedelta(minutes=settings.access_token_expire_minutes)

    def issue(self, principal: Principal, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta or self._lifetime)
        to_encode = {"sub": principal.id, "role": principal.role, "exp": expire}
        return jwt.encode(to_encode, self._secret, algorithm=self._algorithm)

    def subject(self, token: str) -> str:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as error:
            raise InvalidToken() from error
        subject = payload.get("sub")
        if not subject:
            raise InvalidToken()
        return str(subject)


class IdentityService:
    def __init__(self, database: Database, settings: Settings, fanout: NotificationFanout):
        self._database = database
        self._fanout = fanout
        self.tokens = TokenIssuer(settings)
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds
        )

    @property
    def _users(self):
        return self._database[COLLECTION]

    # Utility functions

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        if not hashed_password:
            return False
        return self.pwd_context.verify(plain_password, hashed_password)

    def _load(self, principal_id: str) -> dict:
        user = self._users.find_one({"_id": object_id(principal_id, "user id")})
        if user is None:
            raise NotFound("User not found")
        return user

    # Session

    def register(
        self,
        name: str,
        email: str,
        password: str,
        role: str,
        *,
        branch: Optional[str] = None,
        year: Optional[str] = None,
        department: Optional[str] = None,
        allow_admin: bool = False,
    ) -> Principal:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if not name or not email:
            raise ValidationError("Name and email are required")
        if role == "admin" and not allow_admin:
            raise Forbidden("Administrator accounts cannot be self-registered")
        if role not in ("student", "teacher", "admin"):
            raise ValidationError(f"Unknown role: {role}")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if role == "student":
            if not branch or not year:
                raise ValidationError("Branch and year are required for students")
            if year not in YEARS:
                raise ValidationError(f"Year must be one of {', '.join(YEARS)}")
        if role == "teacher" and not department:
            raise ValidationError("Department is required for teachers")
        if self._users.find_one({"email": email}):
            raise DuplicateIdentity()

        try:
            user = User(
                name=name,
                email=email,
                role=role,
                hashed_password=self.hash_password(password),
                branch=branch if role == "student" else None,
                year=year if role == "student" else None,
                department=department if role == "teacher" else None,
                # teachers wait for an administrator
                is_approved=role != "teacher",
            )
        except SchemaError as error:
            raise ValidationError(error.errors()[0].get("msg", "Invalid user")) from error

        try:
            user_id = self._database.create_document(COLLECTION, user)
        except PyMongoError as error:
            if is_duplicate_key(error):
                raise DuplicateIdentity() from error
            raise
        LOGGER.info("Registered %s account %s", role, user_id)
        return Principal.from_document(self._load(user_id))

    def authenticate(self, email: str, password: str) -> str:
        user = self._users.find_one({"email": (email or "").strip().lower()})
        # unknown email and wrong password share one error
        if user is None or not self.verify_password(password or "", user.get("hashed_password", "")):
            LOGGER.info("Rejected login attempt")
            raise InvalidCredentials()
        principal = Principal.from_document(user)
        if not principal.is_approved:
            raise PendingApproval()
        return self.tokens.issue(principal)

    def verify(self, token: str) -> Principal:
        subject = self.tokens.subject(token)
        try:
            user = self._users.find_one({"_id": object_id(subject)})
        except ValidationError as error:
            raise InvalidToken() from error
        if user is None:
            LOGGER.warning("Token subject %s no longer exists", subject)
            raise InvalidToken()
        principal = Principal.from_document(user)
        if not principal.is_approved:
            raise PendingApproval()
        return principal

    # Profile

    def get_me(self, principal: Principal) -> dict:
        return serialize(self._load(principal.id))

    def update_profile(self, principal: Principal, changes: Dict[str, Any]) -> dict:
        allowed = {"name", "profile_picture"}
        if principal.is_student:
            allowed |= {"branch", "year"}
        elif principal.role == "teacher":
            allowed.add("department")
        updates = {key: value for key, value in changes.items() if key in allowed and value is not None}
        if "year" in updates and updates["year"] not in YEARS:
            raise ValidationError(f"Year must be one of {', '.join(YEARS)}")
        if "name" in updates:
            updates["name"] = str(updates["name"]).strip()
            if not updates["name"]:
                raise ValidationError("Name cannot be empty")
        if updates:
            updates["updated_at"] = utcnow()
            self._users.update_one({"_id": object_id(principal.id)}, {"$set": updates})
        return self.get_me(principal)

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> str:
        user = self._load(principal.id)
        if not self.verify_password(current_password or "", user.get("hashed_password", "")):
            raise InvalidCredentials("Password is incorrect")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        self._users.update_one(
            {"_id": user["_id"]},
            {"$set": {"hashed_password": self.hash_password(new_password), "updated_at": utcnow()}},
        )
        return self.tokens.issue(principal)

    # Administration

    def list_principals(
        self,
        admin: Principal,
        *,
        role: Optional[str] = None,
        approved: Optional[bool] = None,
        search: Optional[str] = None,
        page: Any = None,
        limit: Any = None,
    ) -> Page:
        require_role(admin, "admin")
        query: Dict[str, Any] = {}
        if role:
            query["role"] = role
        if approved is not None:
            query["is_approved"] = approved
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"email": pattern}]
        return paginate(self._users, query, page=page, limit=limit, transform=serialize)

    def get_principal(self, admin: Principal, principal_id: str) -> dict:
        require_role(admin, "admin")
        return serialize(self._load(principal_id))

    def set_approval(self, admin: Principal, principal_id: str, approved: bool) -> dict:
        require_role(admin, "admin")
        user = self._load(principal_id)
        changed = bool(user.get("is_approved")) != approved
        self._users.update_one(
            {"_id": user["_id"]}, {"$set": {"is_approved": approved, "updated_at": utcnow()}}
        )
        if changed:
            self._fanout.emit(
                str(user["_id"]),
                "Account Approved" if approved else "Account Rejected",
                APPROVED_MESSAGE if approved else REJECTED_MESSAGE,
                SystemAnnouncementPayload(approved=approved),
            )
        return serialize(self._load(principal_id))

    def bulk_set_approval(self, admin: Principal, principal_ids: Iterable[str], approved: bool) -> int:
        require_role(admin, "admin")
        ids = list(dict.fromkeys(str(value) for value in principal_ids))
        if not ids:
            raise ValidationError("Please provide an array of user IDs")
        found = self._database.find_by_ids(COLLECTION, ids)
        if len(found) != len(ids):
            known = {str(user["_id"]) for user in found}
            missing = next(value for value in ids if value not in known)
            raise NotFound(f"User with ID {missing} not found")
        result = self._users.update_many(
            {"_id": {"$in": [user["_id"] for user in found]}},
            {"$set": {"is_approved": approved, "updated_at": utcnow()}},
        )
        self._fanout.emit_many(
            ids,
            "Account Approved" if approved else "Account Rejected",
            APPROVED_MESSAGE if approved else REJECTED_MESSAGE,
            SystemAnnouncementPayload(approved=approved),
        )
        LOGGER.info("%s %d accounts", "Approved" if approved else "Rejected", result.modified_count)
        return result.modified_count

    def delete_principal(self, admin: Principal, principal_id: str) -> None:
        require_role(admin, "admin")
        user = self._load(principal_id)
        if user.get("role") == "admin":
            raise Forbidden("Cannot delete admin user")
        self._users.delete_one({"_id": user["_id"]})

    def bulk_delete_principals(self, admin: Principal, principal_ids: Iterable[str]) -> int:
        require_role(admin, "admin")
        ids = [object_id(value, "user id") for value in principal_ids]
        if not ids:
            raise ValidationError("Please provide an array of user IDs")
        if self._users.count_documents({"_id": {"$in": ids}, "role": "admin"}):
            raise Forbidden("Cannot delete admin user")
        return self._users.delete_many({"_id": {"$in": ids}, "role": {"$ne": "admin"}}).deleted_count

    def ensure_admin(self, email: str, password: str, name: str) -> Optional[Principal]:
        """Create the bootstrap administrator if it does not exist yet."""
        existing = self._users.find_one({"email": email.strip().lower()})
        if existing is not None:
            if existing.get("role") != "admin":
                LOGGER.warning("Bootstrap admin email %s belongs to a %s account", email, existing.get("role"))
            return Principal.from_document(existing)
        principal = self.register(name, email, password, "admin", allow_admin=True)
        LOGGER.info("Created bootstrap administrator %s", principal.id)
        return principal


__all__ = ["IdentityService", "TokenIssuer"]
