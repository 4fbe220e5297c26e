import time, jwt
import stripe
from typing import Dict, Optional
from common.error_handling import AuthenticationError, ErrorCodes, EventValidationError
from common.settings import Settings, settings as default_settings

ALGO = "HS256"

def mint_admin_jwt(admin_id: str, claims: Optional[Dict] = None, settings: Settings = default_settings) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": admin_id,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        "scope": "admin",
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, settings: Settings = default_settings) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[ALGO],
            options=options,
            issuer=settings.jwt_issuer,
        )
    except jwt.PyJWTError as e:
        raise AuthenticationError(f"invalid admin token: {e}", code=ErrorCodes.INVALID_TOKEN)

def admin_id_from_header(authorization: Optional[str], settings: Settings = default_settings) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("missing bearer token")
    claims = verify_token(authorization.split(" ", 1)[1], settings)
    return claims["sub"]

def verify_webhook_signature(payload: bytes, signature: Optional[str], settings: Settings = default_settings) -> None:
    """Check a Stripe-Signature header against the raw request body."""
    if not signature:
        raise AuthenticationError("missing Stripe-Signature header", code=ErrorCodes.INVALID_SIGNATURE)
    if not settings.stripe_webhook_secret:
        raise AuthenticationError("webhook secret not configured", code=ErrorCodes.INVALID_SIGNATURE)
    try:
        stripe.Webhook.construct_event(
            payload,
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError(f"webhook signature verification failed: {e}", code=ErrorCodes.INVALID_SIGNATURE)
    except ValueError as e:
        raise EventValidationError(f"webhook payload is not valid JSON: {e}")
