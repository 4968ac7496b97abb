"""

User authentication and session handling

"""
import base64
import datetime as dt
import functools
import logging
from typing import Callable, Optional, Tuple

import flask

from geoengine_driver.config import GeoEngineBackendConfig, get_backend_config
from geoengine_driver.errors import (
    AuthenticationRequiredException,
    AuthenticationSchemeInvalidException,
    CredentialsInvalidException,
    TokenInvalidException,
)
from geoengine_driver.users.user import ANONYMOUS_ROLE, User, user_id_b64_decode, user_id_b64_encode
from geoengine_driver.util.caching import TtlCache
from geoengine_driver.util.date_math import now_utc
from geoengine_driver.util.logging import FlaskUserIdLogging, user_id_trim
from geoengine_driver.utils import generate_unique_id

_log = logging.getLogger(__name__)

FIXED_SESSION_USER_ID = "anonymous"


class HttpAuthHandler:
    """Handler for processing HTTP authentication in a Flask app context"""

    def __init__(self, config: Optional[GeoEngineBackendConfig] = None, _clock: Optional[Callable[[], float]] = None):
        self._config: GeoEngineBackendConfig = config or get_backend_config()
        cache_kwargs = {"_clock": _clock} if _clock else {}
        self._sessions = TtlCache(default_ttl=self._config.session_ttl, **cache_kwargs)

    def public(self, f: Callable):
        """
        Decorator for public request handler: no authorization is required
        """
        return f

    def requires_http_basic_auth(self, f: Callable):
        """
        Decorator for a flask request handler that requires HTTP basic auth (header)
        """

        @functools.wraps(f)
        def decorated(*args, **kwargs):
            # Try to authenticate user from HTTP basic auth headers (failure will raise appropriate exception).
            self.authenticate_basic(flask.request)
            return f(*args, **kwargs)

        return decorated

    def requires_bearer_auth(self, f: Callable):
        """
        Decorator for flask request handler that requires a valid bearer auth (header).

        When function has a `user` argument, the User object will be passed
        """

        @functools.wraps(f)
        def decorated(*args, **kwargs):
            # Try to load user info from request (failure will raise appropriate exception).
            user = self.get_user_from_bearer_token(flask.request)
            FlaskUserIdLogging.set_user_id(user_id_trim(user.user_id))
            # If handler function expects a `user` argument: pass the user object
            if "user" in f.__code__.co_varnames:
                kwargs["user"] = user
            return f(*args, **kwargs)

        return decorated

    def get_auth_token(self, request: flask.Request, type="Bearer") -> str:
        """Get bearer/basic token from Authorization header in request"""
        if "Authorization" not in request.headers:
            raise AuthenticationRequiredException
        try:
            auth_type, auth_code = request.headers["Authorization"].split(" ")
        except ValueError:
            raise AuthenticationSchemeInvalidException from None
        if auth_type != type:
            raise AuthenticationSchemeInvalidException
        return auth_code

    def get_user_from_bearer_token(self, request: flask.Request) -> User:
        """Get User object from bearer token of request."""
        bearer = self.get_auth_token(request, "Bearer")
        if "/" not in bearer:
            return self.resolve_session_token(bearer)
        try:
            bearer_type, _, access_token = bearer.split("/")
        except ValueError:
            _log.warning("Invalid bearer token {b!r}".format(b=bearer))
            raise TokenInvalidException from None
        if bearer_type == "basic":
            if not self._config.enable_basic_auth:
                raise AuthenticationSchemeInvalidException(message="Basic authentication is not supported.")
            return self.resolve_basic_access_token(access_token=access_token)
        else:
            _log.warning("Invalid bearer token {b!r}".format(b=bearer))
            raise TokenInvalidException

    def parse_basic_auth_header(self, request: flask.Request) -> Tuple[str, str]:
        """
        Parse user and password from request with Basic HTTP authorization header.

        :returns: (username, password)
        """
        token = self.get_auth_token(request, "Basic")
        try:
            username, password = base64.b64decode(token.encode("ascii")).decode("utf-8").split(":")
        except ValueError:
            raise TokenInvalidException from None
        return username, password

    def authenticate_basic(self, request: flask.Request) -> Tuple[str, str]:
        """
        Basic authentication:
        parse a request with Basic HTTP authorization, authenticate user and return access token

        :returns: (access_token, user_id)
        """
        username, password = self.parse_basic_auth_header(request)
        _log.info(f"Handling basic auth for user {username!r}")
        if not (self._config.enable_basic_auth and self._config.valid_basic_auth):
            raise AuthenticationSchemeInvalidException(message="Basic authentication is not supported.")
        if not self._config.valid_basic_auth(username, password):
            raise CredentialsInvalidException
        user_id = username
        access_token = self.build_basic_access_token(user_id)
        return access_token, user_id

    @staticmethod
    def build_basic_access_token(user_id: str) -> str:
        return user_id_b64_encode(user_id)

    def resolve_basic_access_token(self, access_token: str) -> User:
        try:
            user_id = user_id_b64_decode(access_token)
        except ValueError:
            raise TokenInvalidException from None
        return User(user_id=user_id, internal_auth_data={"authentication_method": "basic"})

    def create_anonymous_session(self) -> dict:
        """
        Create a session for an anonymous user.
        With a configured `fixed_session_token`, all anonymous sessions share that token.
        """
        if not self._config.anonymous_access:
            raise AuthenticationSchemeInvalidException(message="Anonymous access is disabled.")
        created = now_utc()
        if self._config.fixed_session_token:
            token = self._config.fixed_session_token
            user = self._fixed_session_user()
        else:
            token = generate_unique_id(date_prefix=False)
            user = User(
                user_id=generate_unique_id(prefix="anon", date_prefix=False),
                internal_auth_data={"authentication_method": "session"},
                roles=[ANONYMOUS_ROLE],
            )
        expiration = self._sessions.set(key=("session", token), value=user)
        _log.info(f"Created anonymous session for user {user_id_trim(user.user_id)}")
        return {
            "id": token,
            "user": {"id": user.user_id},
            "created": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "validUntil": dt.datetime.fromtimestamp(expiration, tz=dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def _fixed_session_user(self) -> User:
        return User(
            user_id=FIXED_SESSION_USER_ID,
            internal_auth_data={"authentication_method": "session"},
            roles=[ANONYMOUS_ROLE],
        )

    def resolve_session_token(self, token: str) -> User:
        if self._config.fixed_session_token and token == self._config.fixed_session_token:
            return self._fixed_session_user()
        user = self._sessions.get(("session", token))
        if user is None:
            raise TokenInvalidException
        return user

    def end_session(self, token: str):
        self._sessions.delete(("session", token))
