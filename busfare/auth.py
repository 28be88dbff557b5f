from typing import Optional

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt


def require_admin(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    secret = request.app.state.settings.jwt_secret
    try:
        if not secret or not authorization:
            raise ValueError()
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError()
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden: Admin access required")
    return claims
