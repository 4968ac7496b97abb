"""
Helpers to load default config values from environment variables.
"""

import os
from typing import Callable, Optional

from geoengine_driver.utils import smart_bool


def from_env(var: str, *, default=None) -> Callable[[], Optional[str]]:
    """
    Attrs default factory to get a value from an env var

    Usage example:

        >>> @attrs.define
        ... class Config:
        ...    deploy_env: str = attrs.field(factory=from_env("GEOENGINE_DEPLOY_ENV", default="dev"))

    :param var: env var name
    :param default: fallback value if env var is not set
    :return: callable to be used with `attrs.field(factory=...)` or `attrs.Factory(...)`
    """

    def get():
        return os.environ.get(var, default)

    return get


def from_env_as_bool(var: str, *, default: bool = False) -> Callable[[], bool]:
    """
    Attrs default factory to get a boolean from an environment variable
    (with `smart_bool` semantics: "0", "no", "off", "false" are false).
    """

    def get():
        value = os.environ.get(var)
        return smart_bool(value) if value is not None else default

    return get


def from_env_as_float(var: str, *, default: float) -> Callable[[], float]:
    """Attrs default factory to get a float from an environment variable."""

    def get():
        value = os.environ.get(var)
        return float(value) if value else default

    return get
