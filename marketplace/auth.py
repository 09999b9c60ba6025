from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from marketplace.config import settings
from marketplace.database import get_session
from marketplace.models import Seller


def user_from_token(token: str) -> str:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)


def verify_token(authorization: str = Header(...)) -> str:
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_from_token(token)


def verify_seller(user_id: str = Depends(verify_token)) -> str:
    with get_session() as session:
        if session.get(Seller, user_id) is None:
            raise HTTPException(status_code=403, detail="This account is not registered as a seller")
    return user_id
