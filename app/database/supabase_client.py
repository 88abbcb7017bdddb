from typing import Optional
import logging

from supabase import create_client, Client
from app.config import settings
from app.database.memory_store import InMemoryRBACStore
from app.database.rbac_store import RBACStore, SupabaseRBACStore

logger = logging.getLogger(__name__)


class SupabaseClient:
    _client: Client = None
    _service_client: Client = None
    _rbac_store: Optional[RBACStore] = None

    @classmethod
    def get_client(cls) -> Client:
        if cls._client is None:
            cls._client = create_client(settings.supabase_url, settings.supabase_key)
        return cls._client

    @classmethod
    def get_service_client(cls) -> Client:
        """Client with service_role key; bypasses RLS. Role and override writes need it."""
        if cls._service_client is None and settings.supabase_service_role_key:
            cls._service_client = create_client(
                settings.supabase_url, settings.supabase_service_role_key
            )
        return cls._service_client or cls.get_client()

    @classmethod
    def get_rbac_store(cls) -> RBACStore:
        if cls._rbac_store is None:
            if settings.uses_memory_store:
                logger.warning("Using in-memory RBAC store; data is lost on restart")
                cls._rbac_store = InMemoryRBACStore()
            else:
                cls._rbac_store = SupabaseRBACStore(cls.get_service_client())
        return cls._rbac_store

    @classmethod
    def reset_client(cls):
        cls._client = None
        cls._service_client = None
        cls._rbac_store = None


def get_supabase() -> Client:
    return SupabaseClient.get_client()


def get_rbac_store() -> RBACStore:
    return SupabaseClient.get_rbac_store()
