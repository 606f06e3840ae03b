import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .. import exceptions
from ..core.config import Config


logger = logging.getLogger(__name__)

# The user id is read from this claim only; tokens carrying it elsewhere are rejected.
USER_ID_CLAIM = "sub"


class AuthService:
    """
    Service class for issuing and verifying customer access tokens.
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret = secret or Config.JWT_SECRET
        self.algorithm = algorithm or Config.JWT_ALGORITHM


    def create_access_token(self, user_id: int, expiry_seconds: Optional[int] = None) -> str:
        """ Issues a signed access token for the given user. """

        now = datetime.now(timezone.utc)
        expiry = timedelta(seconds=expiry_seconds if expiry_seconds is not None else Config.ACCESS_TOKEN_EXPIRY)

        payload = {
            USER_ID_CLAIM: str(user_id),
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + expiry,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)


    def decode_token(self, token: str) -> dict:
        """
        Decodes and verifies a token's signature and expiry.

        Raises:
            InvalidTokenException: If the token is malformed, tampered with or expired.
        """

        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", USER_ID_CLAIM]},
            )
        except jwt.PyJWTError as e:
            logger.warning(f"Rejected access token: {e}")
            raise exceptions.InvalidTokenException() from e


    def resolve_user_id(self, token: str) -> int:
        """ Returns the verified user id carried by the token. """

        payload = self.decode_token(token)

        try:
            user_id = int(payload[USER_ID_CLAIM])
        except (TypeError, ValueError) as e:
            logger.warning(f"Access token carries a non-numeric {USER_ID_CLAIM} claim")
            raise exceptions.InvalidTokenException() from e

        if user_id <= 0:
            raise exceptions.InvalidTokenException()

        return user_id
