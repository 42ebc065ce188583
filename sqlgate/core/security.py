from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from sqlgate.core.config import settings
from sqlgate.core.exceptions import SecurityEventKind, SecurityException
from sqlgate.core.schemas import Actor


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    to_encode = data.copy()

    expire_time = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire_time})

    encoded_jwt = jwt.encode(
        to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM
    )

    return encoded_jwt


def token_for_actor(actor: Actor) -> str:
    return create_access_token(
        {"sub": actor.user_id, "name": actor.display_name, "roles": list(actor.roles)}
    )


# auto_error=False: a missing token goes through the error boundary like any other auth failure
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)


# Decode the token and see who is calling
async def get_current_actor(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
) -> Actor:
    if not token:
        raise SecurityException(
            "Request has no bearer token", SecurityEventKind.AUTHENTICATION_FAILURE
        )

    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
    # In case if token is expired
    except jwt.ExpiredSignatureError:
        raise SecurityException("Bearer token has expired", SecurityEventKind.TOKEN_EXPIRED) from None
    except jwt.InvalidTokenError as e:
        raise SecurityException(
            f"Bearer token could not be decoded: {e}", SecurityEventKind.INVALID_TOKEN
        ) from None

    user_id = payload.get("sub")
    if not user_id:
        raise SecurityException("Bearer token has no subject", SecurityEventKind.INVALID_TOKEN)

    return Actor(
        user_id=str(user_id),
        display_name=payload.get("name"),
        roles=list(payload.get("roles") or []),
    )


actor_dep = Annotated[Actor, Depends(get_current_actor)]
