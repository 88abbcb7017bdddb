"""Resolves a bearer token to the already-authenticated Supabase user. Sign-in itself happens elsewhere."""
import hashlib
import threading
import time
from supabase import Client
from fastapi import HTTPException
from typing import Dict, Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

# Short TTL cache keyed by token hash; many parallel requests share one token
_AUTH_CACHE_TTL_SEC = 60
_AUTH_CACHE_MAX_SIZE = 500


class _TokenCache:
    def __init__(self, ttl: float, max_size: int):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            user_data, expiry = entry
            if now >= expiry:
                del self._entries[key]
                return None
            return user_data

    def put(self, key: str, user_data: Dict[str, Any]) -> None:
        now = time.monotonic()
        with self._lock:
            if len(self._entries) >= self.max_size:
                for stale in [k for k, (_, expiry) in self._entries.items() if now >= expiry]:
                    del self._entries[stale]
            if len(self._entries) < self.max_size:
                self._entries[key] = (user_data, now + self.ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_token_cache = _TokenCache(_AUTH_CACHE_TTL_SEC, _AUTH_CACHE_MAX_SIZE)


class AuthService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    @staticmethod
    def clear_cache() -> None:
        _token_cache.clear()

    def get_current_user(self, token: str) -> Dict[str, Any]:
        """Get current user details from Supabase Auth token. Uses short TTL cache to reduce auth API calls."""
        cache_key = hashlib.sha256(token.encode()).hexdigest()
        cached = _token_cache.get(cache_key)
        if cached is not None:
            return cached
        try:
            user_response = self.supabase.auth.get_user(jwt=token)
        except Exception as e:
            error_msg = str(e)
            logger.info(f"Token rejected by Supabase Auth: {error_msg}")
            if "JWT" in error_msg or "expired" in error_msg.lower() or "invalid" in error_msg.lower():
                raise HTTPException(status_code=401, detail="Invalid or expired token")
            raise HTTPException(status_code=401, detail="Authentication failed")

        if not user_response or not user_response.user:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        user = user_response.user
        user_data = {
            "id": user.id,
            "email": user.email,
            "user_metadata": user.user_metadata or {},
            "app_metadata": user.app_metadata or {},
        }
        _token_cache.put(cache_key, user_data)
        return user_data
