import logging
from typing import Optional

from jose import jwt, JWTError
from supabase import create_client, Client

from evidence_export.config import ExportSettings, get_settings
from evidence_export.jobs.errors import ConfigurationError

logger = logging.getLogger(__name__)

_client: Optional[Client] = None

JWT_ALGORITHMS = ["HS256"]
JWT_AUDIENCE = "authenticated"


def create_supabase(settings: Optional[ExportSettings] = None) -> Client:
    """Create a new Supabase client from settings."""
    settings = settings or get_settings()

    if not settings.supabase_url:
        raise ConfigurationError("SUPABASE_URL not set")
    if not settings.supabase_key:
        raise ConfigurationError("No Supabase key found (SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY)")

    return create_client(settings.supabase_url, settings.supabase_key)


def get_supabase() -> Client:
    """Get the shared Supabase client, creating it on first use."""
    global _client
    if _client is None:
        _client = create_supabase()
    return _client


def verify_supabase_token(token: str, secret: Optional[str] = None) -> Optional[dict]:
    """
    Verify a Supabase JWT against the project's JWT secret and return the user data.
    Returns None if verification fails or the token has no subject.
    """
    if not token:
        return None

    secret = secret or get_settings().supabase_jwt_secret
    if not secret:
        logger.error("[Auth] SUPABASE_JWT_SECRET not set; rejecting token")
        return None

    try:
        decoded = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS, audience=JWT_AUDIENCE)
    except JWTError as e:
        logger.warning(f"[Auth] JWT verification failed: {e}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.warning("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }


def get_user_profile(supabase: Client, user_id: str) -> Optional[dict]:
    """Get user profile (organization and role) from Supabase."""
    try:
        response = supabase.table("profiles")\
            .select("id, organization_id, role")\
            .eq("id", user_id)\
            .limit(1)\
            .execute()
        return response.data[0] if response.data else None
    except Exception as e:
        logger.error(f"Error fetching profile for {user_id}: {e}")
        return None
