from fastapi import Request
from fastapi.security import HTTPBearer
from fastapi.security.http import HTTPAuthorizationCredentials
from typing import Optional

from ..exceptions import AccessTokenRequiredException, InvalidTokenException


class TokenBearer(HTTPBearer):
    """
    Pulls the bearer token out of the Authorization header.
    Signature and expiry checks are left to AuthService.
    """

    def __init__(self, auto_error: bool = False):
        super().__init__(auto_error=auto_error)


    async def __call__(self, request: Request) -> str:
        creds: Optional[HTTPAuthorizationCredentials] = await super().__call__(request)

        if creds is None or not creds.credentials:
            raise AccessTokenRequiredException()

        token = creds.credentials
        self.verify_token_format(token)
        return token


    def verify_token_format(self, token: str) -> None:
        raise NotImplementedError("Please override this method in child classes")


class AccessTokenBearer(TokenBearer):
    def verify_token_format(self, token: str) -> None:
        # a JWT is always three dot separated segments
        if token.count(".") != 2:
            raise InvalidTokenException()
