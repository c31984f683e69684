"""
Authentication service

Accounts live in the document store ("accounts", bcrypt password hashes).
Signing in issues a JWT access token; signing out revokes it. Identity
subscriptions are per session: a listener registered for one token hears
only that session's sign-out.
"""

import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import bcrypt
from jose import JWTError, jwt

from config import settings
from database import QuerySpec
from exceptions import (
    AuthenticationError,
    EmailInUseError,
    InvalidCredentialError,
    PartialSignupError,
    StudySyncError,
    WeakCredentialError,
    WriteError,
)
from forms import MIN_PASSWORD_LENGTH, SignupForm
from logging_config import logger
from schemas import ACCOUNTS, REVOKED_TOKENS, USERS


@dataclass(frozen=True)
class Identity:
    uid: str
    email: str
    display_name: str


@dataclass
class Session:
    identity: Identity
    access_token: str
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": asdict(self.identity),
            "access_token": self.access_token,
            "token_type": self.token_type,
        }


IdentityListener = Callable[[Optional[Identity]], None]


def verify_password(plain_password: str, hashed_password: str) -> bool:
    # Bcrypt has a 72 byte limit
    password_bytes = plain_password.encode('utf-8')[:72]
    return bcrypt.checkpw(password_bytes, hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    password_bytes = password.encode('utf-8')[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))
    return hashed.decode('utf-8')


def create_access_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {
        "sub": identity.uid,
        "email": identity.email,
        "name": identity.display_name,
        "jti": uuid.uuid4().hex,
        "exp": expire,
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Could not validate credentials")


def _identity_from(claims: Dict[str, Any]) -> Identity:
    return Identity(uid=claims["sub"], email=claims["email"], display_name=claims["name"])


class AuthService:
    """Identity collaborator: create, authenticate, sign out, observe."""

    def __init__(self, store):
        self.store = store
        self._listeners: Dict[str, List[IdentityListener]] = {}  # keyed by token jti
        self._lock = threading.Lock()

    def _find_account(self, email: str) -> Optional[Dict[str, Any]]:
        docs = self.store.query(QuerySpec(ACCOUNTS, (("email", email),), limit=1))
        return docs[0] if docs else None

    def create_identity(self, email: str, password: str, name: str) -> Session:
        email = email.strip().lower()
        if len(password) < MIN_PASSWORD_LENGTH:
            logger.log_auth_event("signup", False, email, "weak password")
            raise WeakCredentialError(MIN_PASSWORD_LENGTH)
        if self._find_account(email):
            logger.log_auth_event("signup", False, email, "email in use")
            raise EmailInUseError(email)

        uid = uuid.uuid4().hex
        try:
            self.store.set(ACCOUNTS, uid, {
                "email": email,
                "display_name": name,
                "password_hash": get_password_hash(password),
            })
        except WriteError as e:
            # lost a race against the unique email index
            if self._find_account(email):
                raise EmailInUseError(email) from e
            logger.log_auth_event("signup", False, email, e.message)
            raise AuthenticationError("An unknown error occurred during account creation.") from e

        identity = Identity(uid=uid, email=email, display_name=name)
        logger.log_auth_event("signup", True, email)
        return Session(identity, create_access_token(identity))

    def authenticate(self, email: str, password: str) -> Session:
        email = email.strip().lower()
        account = self._find_account(email)
        if not account or not verify_password(password, account["password_hash"]):
            logger.log_auth_event("login", False, email, "invalid credentials")
            raise InvalidCredentialError()
        identity = Identity(uid=account["id"], email=account["email"], display_name=account["display_name"])
        logger.log_auth_event("login", True, email)
        return Session(identity, create_access_token(identity))

    def sign_out(self, token: str) -> None:
        claims = decode_token(token)
        if self.store.get(REVOKED_TOKENS, claims["jti"]) is None:
            # the TTL index on expires_at drops the entry once the token would have expired anyway
            self.store.set(REVOKED_TOKENS, claims["jti"], {
                "uid": claims["sub"],
                "expires_at": datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            })
        logger.log_auth_event("logout", True, claims.get("email"))
        self._notify_signed_out(claims["jti"])

    def _live_claims(self, token: str) -> Dict[str, Any]:
        claims = decode_token(token)
        if self.store.get(REVOKED_TOKENS, claims["jti"]) is not None:
            raise AuthenticationError("This session has been signed out")
        return claims

    def identity_for(self, token: str) -> Identity:
        """Resolve the identity behind an access token."""
        return _identity_from(self._live_claims(token))

    def sign_up(self, form: SignupForm) -> Session:
        """
        Create the identity, then its users/{uid} profile.

        If the profile write fails the account still exists; PartialSignupError
        carries the session so the caller can report both facts.
        """
        session = self.create_identity(form.email, form.password, form.name)
        uid = session.identity.uid
        try:
            self.store.set(USERS, uid, {
                "uid": uid,
                "name": form.name,
                "email": session.identity.email,
                "upvote_score": 0,
            })
        except StudySyncError as e:
            logger.log_error_with_context(e, "profile save after signup", uid=uid)
            raise PartialSignupError(session, e) from e
        return session

    # ----------------------- observation -----------------------

    def subscribe_identity(self, token: Optional[str], listener: IdentityListener) -> Callable[[], None]:
        """
        Observe one session.

        `listener` is called now with the identity behind `token` (None when
        the token is missing, invalid or signed out), then once more with None
        when that session signs out. Other sessions never reach it.
        """
        try:
            claims = self._live_claims(token) if token else None
        except AuthenticationError as e:
            logger.info(f"Identity subscription with an unusable token: {e.message}")
            claims = None
        if claims is None:
            listener(None)
            return lambda: None

        jti = claims["jti"]
        with self._lock:
            self._listeners.setdefault(jti, []).append(listener)
        listener(_identity_from(claims))

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(jti, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(jti, None)

        return unsubscribe

    def close(self) -> None:
        """Release every open subscription; each listener hears None once."""
        with self._lock:
            listeners = [listener for group in self._listeners.values() for listener in group]
            self._listeners.clear()
        for listener in listeners:
            listener(None)

    def _notify_signed_out(self, jti: str) -> None:
        with self._lock:
            listeners = self._listeners.pop(jti, [])
        for listener in listeners:
            listener(None)
