from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from backend.app.config import get_settings


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Create the process-wide Supabase admin client from settings."""

    settings = get_settings()
    url = settings.supabase_url
    key = settings.supabase_service_role_key

    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

    options = ClientOptions(auto_refresh_token=False, persist_session=False)
    return create_client(url, key, options=options)
