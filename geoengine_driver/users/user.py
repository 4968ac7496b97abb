import base64
from typing import Iterable, Optional, Set

ANONYMOUS_ROLE = "anonymous"


class User:
    """Authenticated principal (possibly an anonymous session user)."""

    __slots__ = ("user_id", "info", "internal_auth_data", "_roles")

    def __init__(
        self,
        user_id: str,
        info: Optional[dict] = None,
        internal_auth_data: Optional[dict] = None,
        roles: Iterable[str] = (),
    ):
        self.user_id = user_id
        self.info = info
        self.internal_auth_data = internal_auth_data
        self._roles: Set[str] = set(roles)

    def __repr__(self):
        return "%s(%r, %r)" % (self.__class__.__name__, self.user_id, self.info)

    def __str__(self):
        return self.user_id

    def __eq__(self, other):
        return type(self) is type(other) and all(getattr(self, k) == getattr(other, k) for k in self.__slots__)

    def __hash__(self):
        return hash(self.user_id)

    def add_role(self, role: str):
        self._roles.add(role)

    def get_roles(self) -> Set[str]:
        return self._roles

    @property
    def is_anonymous(self) -> bool:
        return ANONYMOUS_ROLE in self._roles


def user_id_b64_encode(user_id: str) -> str:
    """Encode a user id in way that is safe to use in urls"""
    return base64.urlsafe_b64encode(user_id.encode("utf8")).decode("ascii")


def user_id_b64_decode(encoded: str) -> str:
    """Decode a user id that was encoded with user_id_b64_encode"""
    return base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
