from supabase import Client, create_client

from messenger.config import SUPABASE_ANON_KEY, SUPABASE_URL


def get_client() -> Client:
    """
    Provide a new Supabase client.

    Each browser session needs its own client because the client
    holds the signed-in user's auth session.
    """
    return create_client(SUPABASE_URL, SUPABASE_ANON_KEY)
