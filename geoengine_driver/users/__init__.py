from geoengine_driver.users.user import ANONYMOUS_ROLE, User
