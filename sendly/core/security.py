from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse
from uuid import uuid4

from jose import JWTError, jwt

ALGORITHM = "HS256"


class TokenValidationError(ValueError):
    pass


def create_session_token(
    shop_domain: str,
    *,
    secret: str,
    audience: str | None = None,
    expires_delta: timedelta = timedelta(minutes=1),
) -> str:
    """Mint a token shaped like a Shopify App Bridge session token."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": f"https://{shop_domain}/admin",
        "dest": f"https://{shop_domain}",
        "sub": "1",
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "nbf": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_session_token(token: str, *, secret: str, audience: str | None = None) -> dict:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except JWTError as exc:
        raise TokenValidationError("Invalid session token") from exc

    if not payload.get("dest"):
        raise TokenValidationError("Session token has no destination shop")
    return payload


def shop_domain_from_claims(payload: dict) -> str:
    dest = str(payload.get("dest") or "")
    host = urlparse(dest).hostname if "://" in dest else dest
    if not host:
        raise TokenValidationError("Session token has no destination shop")
    return host.lower()
