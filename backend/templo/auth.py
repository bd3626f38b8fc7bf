from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import HTTPException, Request, Response

from . import app_db
from .config import SESSION_TTL_S
from .logging_utils import get_logger

log = get_logger(__name__)

Role = Literal["admin", "member", "anonymous"]

AUTH_COOKIE = "templo_session"

PBKDF2_ALGO = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 200_000
_TRUTHY = ("1", "true", "yes", "y")

_AUTH_SECRET = os.getenv("TEMPLO_AUTH_SECRET") or ""
if not _AUTH_SECRET:
    _AUTH_SECRET = secrets.token_hex(32)
    log.warning("TEMPLO_AUTH_SECRET is not set; session tokens will not survive a restart.")


@dataclass(frozen=True)
class Principal:
    authenticated: bool
    role: Role
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    magical_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


ANONYMOUS = Principal(authenticated=False, role="anonymous")


@dataclass(frozen=True)
class AuthContext:
    principal: Principal
    clear_auth_cookie: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _token_hash(token: str) -> str:
    # Only this digest is stored; the raw token lives in the client.
    return hmac.new(_AUTH_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    if not password:
        raise ValueError("Password is empty")
    salt = secrets.token_bytes(16)
    return "$".join((PBKDF2_ALGO, str(iterations), salt.hex(), _derive(password, salt, iterations).hex()))


def verify_password(password: str, stored: str) -> bool:
    parts = str(stored or "").split("$")
    if len(parts) != 4 or parts[0] != PBKDF2_ALGO:
        return False
    try:
        iterations = int(parts[1])
        salt = bytes.fromhex(parts[2])
        expected = bytes.fromhex(parts[3])
    except ValueError:
        return False
    return hmac.compare_digest(_derive(str(password or ""), salt, iterations), expected)


def _admin_env() -> tuple[str, str | None, bool]:
    username = (os.getenv("TEMPLO_ADMIN_USERNAME") or "admin").strip()
    password = os.getenv("TEMPLO_ADMIN_PASSWORD") or None
    reset = (os.getenv("TEMPLO_ADMIN_PASSWORD_RESET") or "").strip().lower() in _TRUTHY
    return username, password, reset


def ensure_bootstrap_admin() -> None:
    """Create the first admin on an empty database, or rotate its password on request."""
    username, password, reset = _admin_env()

    if app_db.count_users() == 0:
        generated = password is None
        if generated:
            password = secrets.token_urlsafe(14)
        app_db.create_user(username=username, password_hash=hash_password(password), role="admin")
        if generated:
            log.warning("Created admin %s with generated password %s; set TEMPLO_ADMIN_PASSWORD to choose one.", username, password)
        else:
            log.info("Created admin %s from TEMPLO_ADMIN_PASSWORD", username)
        return

    if not reset:
        return
    if password is None:
        log.warning("TEMPLO_ADMIN_PASSWORD_RESET requested without TEMPLO_ADMIN_PASSWORD; nothing to do.")
        return

    existing = app_db.get_user_by_username(username)
    if existing:
        app_db.update_user(user_id=str(existing["user_id"]), role="admin", password_hash=hash_password(password))
    else:
        app_db.create_user(username=username, password_hash=hash_password(password), role="admin")
    log.warning("Admin %s password set from environment; unset TEMPLO_ADMIN_PASSWORD_RESET now.", username)


def _request_token(request: Request) -> str | None:
    scheme, _, value = str(request.headers.get("authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(AUTH_COOKIE) or None


def _principal_from_record(rec: dict[str, Any]) -> Principal:
    return Principal(
        authenticated=True,
        role=rec.get("role") or "member",
        user_id=str(rec["user_id"]),
        username=rec.get("username") or "",
        email=rec.get("email") or None,
        magical_name=rec.get("magical_name") or None,
    )


def _session_is_live(sess: dict[str, Any]) -> bool:
    if sess.get("disabled_at"):
        return False
    try:
        expires_at = datetime.fromisoformat(str(sess.get("expires_at") or ""))
    except ValueError:
        return False
    return expires_at > _now()


def resolve_auth(request: Request) -> AuthContext:
    """FastAPI dependency: map the request's token to a principal."""
    app_db.delete_expired_auth_sessions(_now().isoformat())

    token = _request_token(request)
    if not token:
        return AuthContext(principal=ANONYMOUS)

    digest = _token_hash(token)
    sess = app_db.get_auth_session(digest)
    if sess and _session_is_live(sess):
        app_db.touch_auth_session(digest)
        return AuthContext(principal=_principal_from_record(sess))

    if sess:
        app_db.delete_auth_session(digest)
    return AuthContext(principal=ANONYMOUS, clear_auth_cookie=True)


def apply_auth_cookies(response: Response, ctx: AuthContext) -> None:
    if ctx.clear_auth_cookie:
        response.delete_cookie(AUTH_COOKIE)


def require_login(ctx: AuthContext) -> Principal:
    if not ctx.principal.authenticated or not ctx.principal.user_id:
        raise HTTPException(status_code=401, detail="Login required")
    return ctx.principal


def require_role(ctx: AuthContext, allowed: set[Role]) -> None:
    if require_login(ctx).role not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


def open_session(rec: dict[str, Any]) -> tuple[Principal, str]:
    token = secrets.token_urlsafe(32)
    expires_at = _now() + timedelta(seconds=SESSION_TTL_S)
    app_db.create_auth_session(token_hash=_token_hash(token), user_id=str(rec["user_id"]), expires_at=expires_at.isoformat())
    return _principal_from_record(rec), token


def create_login_session(*, username: str, password: str) -> tuple[Principal, str]:
    """Log in by username, or by email when the identifier contains '@'."""
    ident = str(username or "").strip()
    rec = app_db.get_user_by_username(ident)
    if rec is None and "@" in ident:
        rec = app_db.get_user_by_email(ident.lower())
    if rec is None or not verify_password(password, str(rec.get("password_hash") or "")):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    if rec.get("disabled_at"):
        raise HTTPException(status_code=403, detail="User is disabled")
    log.info("Login username=%s", rec["username"])
    return open_session(rec)


def logout_session(request: Request) -> None:
    token = _request_token(request)
    if token:
        app_db.delete_auth_session(_token_hash(token))


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(AUTH_COOKIE, token, max_age=SESSION_TTL_S, httponly=True, samesite="lax", secure=False)
