"""
Authorization boundary for the dashboard API.

Session handling (OAuth / NextAuth) lives outside this service. Here a
request is authorized if it carries the internal shared secret
(service-to-service calls) or a session token the injected verifier
accepts. Everything else gets 401 before any cache or upstream work.
"""
import hmac
import logging
from typing import Callable, Optional

from fastapi import Request

from config.settings import Settings
from reportmate.errors import AuthorizationError

logger = logging.getLogger("auth")

SessionVerifier = Callable[[str], bool]

SESSION_COOKIES = ("__Secure-next-auth.session-token", "next-auth.session-token")
LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost")


def _same_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class Authorizer:
    """Answers "is this caller authorized?" for one request."""

    def __init__(
        self,
        internal_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        session_verifier: Optional[SessionVerifier] = None,
        bypass_localhost: bool = False,
    ):
        self.internal_secret = internal_secret
        self.passphrase = passphrase
        self.session_verifier = session_verifier
        self.bypass_localhost = bypass_localhost

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_verifier: Optional[SessionVerifier] = None,
    ) -> "Authorizer":
        return cls(
            internal_secret=settings.api_internal_secret,
            passphrase=settings.reportmate_passphrase,
            session_verifier=session_verifier,
            bypass_localhost=settings.auth_bypass_localhost,
        )

    def is_authorized(self, request: Request) -> bool:
        if self.bypass_localhost and self._is_local(request):
            return True

        if _same_secret(request.headers.get("x-internal-secret"), self.internal_secret):
            return True
        if _same_secret(request.headers.get("x-api-passphrase"), self.passphrase):
            return True

        token = self._session_token(request)
        if token and self.session_verifier is not None:
            return bool(self.session_verifier(token))
        return False

    def require(self, request: Request) -> None:
        """
        Raises:
            AuthorizationError: Caller is not authorized
        """
        if not self.is_authorized(request):
            logger.info(f"Rejected unauthorized request to {request.url.path}")
            raise AuthorizationError(details="Authentication required")

    @staticmethod
    def _session_token(request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization", "")
        if auth_header.lower().startswith("bearer "):
            return auth_header[7:].strip() or None
        for cookie in SESSION_COOKIES:
            if request.cookies.get(cookie):
                return request.cookies[cookie]
        return None

    @staticmethod
    def _is_local(request: Request) -> bool:
        host = request.client.host if request.client else ""
        return host in LOCAL_HOSTS


def require_authorized(request: Request) -> None:
    """FastAPI dependency: run the app's authorizer before the handler."""
    request.app.state.authorizer.require(request)
