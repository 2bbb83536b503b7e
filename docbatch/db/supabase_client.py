"""Service-role Supabase client singleton for the batch record store."""

from typing import Optional

from supabase import create_client, Client
from docbatch.config import settings

_client: Optional[Client] = None


def get_supabase() -> Client:
    """Get or create the Supabase client using service role key."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "DOCBATCH_SUPABASE_URL and DOCBATCH_SUPABASE_SERVICE_ROLE_KEY "
                "must be set when DOCBATCH_BATCH_STORE=supabase"
            )
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client
