from fastapi import Header, HTTPException
from jose import JWTError, jwt

from btcpay_gateway.config import get_settings


def verify_token(authorization: str = Header(...)):
    """Storefront calls carry an HS256 bearer token signed with JWT_SECRET."""
    secret = get_settings().jwt_secret
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer" or not secret:
            raise ValueError("unsupported authorization scheme")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
