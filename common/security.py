import time, jwt
from dataclasses import dataclass
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
ADMIN_ROLE = "admin"

@dataclass(frozen=True)
class Actor:
    """Identity handed to the engine by the authentication provider."""
    actor_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

def mint_user_jwt(sub: str, role: str = "user", claims: Optional[Dict] = None,
                  secret: Optional[str] = None, issuer: Optional[str] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": issuer or settings.jwt_issuer,
        "sub": sub,
        "role": role,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, secret: Optional[str] = None, issuer: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        secret or settings.jwt_secret,
        algorithms=[ALGO],
        options=options,
        issuer=issuer or settings.jwt_issuer,
    )

def actor_from_token(token: str, secret: Optional[str] = None, issuer: Optional[str] = None) -> Actor:
    claims = verify_token(token, secret=secret, issuer=issuer)
    return Actor(actor_id=str(claims["sub"]), role=str(claims.get("role", "user")))
