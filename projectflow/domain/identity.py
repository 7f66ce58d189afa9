from __future__ import annotations

import time

import jwt

from .models import User, UserType
from .repos import IdentityError, IdentityResolver

_USER_ID_CLAIMS = ("userId", "sub")


class JwtIdentityResolver(IdentityResolver):
    """Resolve users from HMAC-signed JWTs.

    The user id is read from the ``userId`` claim (``sub`` as fallback) and the
    user type from ``userType``; tokens without a type belong to ``DEFAULT`` users.
    """

    def __init__(self, secret: str, algorithms: list[str] | None = None) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self._algorithms = list(algorithms or ["HS256"])

    def resolve(self, token: str) -> User:
        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.ExpiredSignatureError as exc:
            raise IdentityError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise IdentityError(f"invalid token: {exc}") from exc

        user_id = next((claims[c] for c in _USER_ID_CLAIMS if claims.get(c) not in (None, "")), None)
        if user_id is None:
            raise IdentityError("token carries no user id")
        raw_type = str(claims.get("userType", UserType.DEFAULT.value)).lower()
        try:
            user_type = UserType(raw_type)
        except ValueError as exc:
            raise IdentityError(f"unknown user type: {raw_type}") from exc
        return User(id=str(user_id), type=user_type)

    def issue(self, user_id: str, user_type: UserType = UserType.DEFAULT, ttl: float | None = None) -> str:
        """Sign a token for ``user_id``. Used by the CLI and tests."""
        claims: dict = {"userId": user_id, "userType": user_type.value}
        if ttl:
            claims["exp"] = int(time.time() + ttl)
        return jwt.encode(claims, self._secret, algorithm=self._algorithms[0])
