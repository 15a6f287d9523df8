from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from crosspost.core.errors import AuthError
from crosspost.core.security import decode_access_token
from crosspost.infrastructure.logging.context import set_user_id

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> UUID:
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing bearer token")
    user_id = decode_access_token(credentials.credentials)
    set_user_id(str(user_id))
    return user_id
