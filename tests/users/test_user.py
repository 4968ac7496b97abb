import re

import pytest

from geoengine_driver.users.user import ANONYMOUS_ROLE, User, user_id_b64_decode, user_id_b64_encode


@pytest.mark.parametrize(
    "user_id",
    [
        "John",
        "John D",
        "John Do",
        "John Doe",
        "John Drop Tables",
        "Jøhñ Δö€",
        r"J()h&n |>*% $<{}@!\\:,^ #=!,.`=-_+°º¤ø,¸¸,ø¤º°»-(¯`·.·´¯)->¯\_(ツ)_/¯0(╯°□°）╯ ︵ ┻━┻ ",
    ],
)
def test_user_id_b64_encode(user_id):
    encoded = user_id_b64_encode(user_id)
    assert isinstance(encoded, str)
    assert re.match("^[A-Za-z0-9_=-]*$", encoded)
    decoded = user_id_b64_decode(encoded)
    assert isinstance(decoded, str)
    assert decoded == user_id


class TestUser:
    def test_roles(self):
        user = User("john")
        assert user.get_roles() == set()
        assert not user.is_anonymous
        user.add_role("trial")
        assert user.get_roles() == {"trial"}

    def test_anonymous(self):
        user = User("anon-123", roles=[ANONYMOUS_ROLE])
        assert user.is_anonymous
        user = User("john")
        user.add_role(ANONYMOUS_ROLE)
        assert user.is_anonymous

    def test_user_eq(self):
        assert User("alice") == User("alice")
        assert User("alice") != User("bob")
        assert User("alice") != User("alice", roles=["trial"])
        assert User("alice") != "alice"

    def test_hash(self):
        assert len({User("alice"), User("alice"), User("bob")}) == 2

    def test_str(self):
        user = User("alice", info={"name": "Alice"})
        assert str(user) == "alice"
        assert repr(user) == "User('alice', {'name': 'Alice'})"
