"""
Supabase session verification for dashboard-triggered calls
"""
import logging
from typing import Optional

from fastapi.security import HTTPAuthorizationCredentials
from supabase import Client

from core.interfaces import IAuthService
from core.responses import AuthenticationException

logger = logging.getLogger(__name__)


class AuthService(IAuthService):
    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client
        self.logger = logging.getLogger(self.__class__.__name__)

    async def verify_auth(self, credentials: Optional[HTTPAuthorizationCredentials]) -> str:
        """Supabase JWT -> user id"""
        if credentials is None or not credentials.credentials:
            raise AuthenticationException("Missing bearer token")
        user = await self._verify_token_internal(credentials)
        return str(user.id)

    async def _verify_token_internal(self, credentials: HTTPAuthorizationCredentials):
        try:
            response = self.supabase.auth.get_user(credentials.credentials)
            if response is None or response.user is None:
                raise AuthenticationException("Invalid token")
            return response.user
        except AuthenticationException:
            raise
        except Exception as e:
            self.logger.error(f"Token verification failed: {e}")
            raise AuthenticationException("Authentication failed")
