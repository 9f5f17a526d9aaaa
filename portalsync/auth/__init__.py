"""Authentication and authorization for intranet callers."""

from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import JWTError, jwt

from portalsync.config import SecurityConfig
from portalsync.db.models import PermissionLevel
from portalsync.db.repository import Repository

ACCESS_TOKEN_EXPIRE_MINUTES = 60
FINANCIAL_FEATURE = "financial"


class AuthenticationError(Exception):
    """The caller could not be identified."""


class PermissionDeniedError(Exception):
    """The caller lacks the permission level a feature requires."""


class TokenEncryption:
    """Handles encryption and decryption of stored secrets."""

    def __init__(self, encryption_key: str | None):
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    def encrypt(self, value: str) -> str:
        """Encrypt a value if encryption is configured."""
        if self._fernet:
            return self._fernet.encrypt(value.encode()).decode()
        return value

    def decrypt(self, value: str) -> str:
        """Decrypt a value if encryption is configured."""
        if self._fernet:
            return self._fernet.decrypt(value.encode()).decode()
        return value


def create_access_token(
    user_id: str,
    security: SecurityConfig,
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a signed bearer token for a user."""
    if not security.jwt_secret:
        raise AuthenticationError("JWT secret is not configured")
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": user_id, "exp": expire, "type": "access"}
    return jwt.encode(claims, security.jwt_secret, algorithm=security.jwt_algorithm)


def parse_bearer_token(authorization: str | None) -> str:
    """Extract the token from an Authorization header."""
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be a bearer token")
    return token.strip()


def authenticate(authorization: str | None, security: SecurityConfig) -> str:
    """Resolve the user id of the caller, or raise AuthenticationError."""
    token = parse_bearer_token(authorization)
    if not security.jwt_secret:
        raise AuthenticationError("JWT secret is not configured")
    try:
        claims = jwt.decode(token, security.jwt_secret, algorithms=[security.jwt_algorithm])
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e
    user_id = claims.get("sub")
    if not user_id or claims.get("type", "access") != "access":
        raise AuthenticationError("Token does not identify a user")
    return user_id


async def require_permission(
    repo: Repository,
    user_id: str,
    feature: str,
    level: PermissionLevel,
) -> PermissionLevel:
    """Check that a user holds at least `level` on `feature`."""
    granted = await repo.get_permission(user_id, feature)
    if granted.rank < level.rank:
        raise PermissionDeniedError(
            f"Permission '{level.value}' on '{feature}' is required"
        )
    return granted
