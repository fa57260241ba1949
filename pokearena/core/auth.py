"""Identity tokens.

Users are authenticated by an external identity provider that issues JWTs
signed with the shared ``auth_secret``. The server only verifies them:
``sub`` is the user id and ``name`` (or ``username``) the display name.
``create_access_token`` exists for local play, the CLI and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from pydantic import BaseModel

from pokearena.core.errors import AuthenticationError
from pokearena.utils.config import Settings, settings as default_settings


class Identity(BaseModel):
    """The authenticated caller."""

    user_id: str
    display_name: str


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
    config: Settings | None = None,
) -> str:
    """Create a new JWT access token."""
    config = config or default_settings
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.auth_secret, algorithm=config.auth_algorithm)


def decode_identity(token: str, config: Settings | None = None) -> Identity:
    """Verify ``token`` and return who it belongs to."""
    config = config or default_settings
    try:
        payload = jwt.decode(token, config.auth_secret, algorithms=[config.auth_algorithm])
    except JWTError:
        raise AuthenticationError("Could not validate credentials") from None

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Could not validate credentials")
    if str(user_id) == config.ai_user_id:
        raise AuthenticationError("Reserved user id")

    display_name = payload.get("name") or payload.get("username") or "Player"
    return Identity(user_id=str(user_id), display_name=str(display_name))
