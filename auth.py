import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException

import settings
from database import get_db, now_utc
from order_workflow import AuthContext

logger = logging.getLogger(__name__)

# shared pool for password re-checks; bcrypt releases the GIL
_verify_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="step-up")


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # malformed hash in the store
        return False


def create_token(user_doc: dict) -> str:
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc["email"],
        "role": user_doc.get("role", "customer"),
        "exp": now_utc() + timedelta(days=settings.TOKEN_TTL_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGO)


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> Optional[dict]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGO])
    except jwt.PyJWTError:
        return None
    user = db["user"].find_one({"email": payload.get("email")})
    if not user or not user.get("is_active", True):
        return None
    return user


def require_user(user=Depends(get_current_user)) -> dict:
    if not user:
        raise HTTPException(401, "Login required")
    return user


def require_admin(user=Depends(require_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(403, "Admin only")
    return user


class StepUpVerifier:
    """Re-checks the signed-in admin's password before a destructive action.

    Only the stored credential is consulted; no session or token is issued.
    Any failure, including running past ``timeout`` seconds, yields an
    unverified AuthContext.
    """

    def __init__(self, database, timeout: Optional[float] = None, pool: Optional[ThreadPoolExecutor] = None):
        self.database = database
        self.timeout = settings.REAUTH_TIMEOUT_SECONDS if timeout is None else timeout
        self.pool = pool or _verify_pool

    def _check(self, email: str, password: str) -> bool:
        user = self.database["user"].find_one({"email": email})
        if not user or not user.get("is_active", True):
            return False
        if user.get("role") != "admin":
            return False
        return check_password(password, user.get("password_hash"))

    def verify(self, email: str, password: str) -> AuthContext:
        future = self.pool.submit(self._check, email, password)
        try:
            ok = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Admin re-verification for %s timed out after %ss", email, self.timeout)
            return AuthContext(verified=False, admin_email=email)
        if not ok:
            logger.warning("Admin re-verification failed for %s", email)
        return AuthContext(verified=ok, admin_email=email)
