# anistream/security.py
"""
Password hashing and access tokens.

Hashes come from passlib's bcrypt scheme; tokens are HS256 JWTs signed with
python-jose and carry only the user id (``sub``) and an expiry (``exp``).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    """Raised when a token is malformed, badly signed or expired."""
    pass


class PasswordHasher:
    def __init__(self, rounds: int = 12):
        self.context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        return self.context.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self.context.verify(password, password_hash)
        except ValueError:
            # stored value is not a recognizable hash
            logger.warning("Password verification against an unrecognized hash")
            return False


class TokenIssuer:
    def __init__(self, secret: str, expires_days: float = 7, algorithm: str = ALGORITHM):
        self.secret = secret
        self.expires = timedelta(days=expires_days)
        self.algorithm = algorithm

    def issue(self, user_id: int, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else self.expires)
        claims = {"sub": str(user_id), "exp": expire}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def user_id(self, token: str) -> int:
        """Verify the token and return the user id it carries."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise InvalidTokenError("token expired") from e
        except JWTError as e:
            raise InvalidTokenError("invalid token") from e
        sub = payload.get("sub")
        try:
            return int(sub)
        except (TypeError, ValueError) as e:
            raise InvalidTokenError("token subject is not a user id") from e
