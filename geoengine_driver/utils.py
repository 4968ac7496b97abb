"""
Small general utilities and helper functions
"""
import datetime
import importlib.metadata
import logging
import uuid
from typing import Any, List, Optional

from openeo.util import rfc3339

_log = logging.getLogger(__name__)


def smart_bool(value: Any) -> bool:
    """
    Convert given value to a boolean value, like `bool()` builtin,
    but in case of strings: interpret some common cases as `False`:
    "0", "no", "off", "false", ...
    """
    if isinstance(value, str) and value.lower() in ["0", "no", "off", "false"]:
        return False
    else:
        return bool(value)


def get_package_versions(packages: List[str], na_value="n/a") -> dict:
    """Get (installed) version number of each Python package (where possible)."""
    version_info = {}
    for package in packages:
        try:
            version_info[package] = importlib.metadata.version(distribution_name=package)
        except importlib.metadata.PackageNotFoundError:
            version_info[package] = na_value
    return version_info


# Packages reported in the deploy metadata of the capabilities document
DEPLOY_METADATA_PACKAGES = ["geoengine_driver", "openeo", "flask", "numpy", "shapely", "pyproj"]


def build_deploy_metadata(packages: Optional[List[str]] = None) -> dict:
    """Deploy metadata: build date (RFC 3339, UTC) and installed versions of given packages."""
    return {
        "date": rfc3339.now_utc(),
        "versions": get_package_versions(packages or DEPLOY_METADATA_PACKAGES),
    }


def generate_unique_id(prefix: Optional[str] = None, date_prefix: bool = True) -> str:
    """
    Generate a random, unique identifier, to be used as request id,
    correlation id, error id, session token, ...
    """
    id = uuid.uuid4().hex
    if date_prefix:
        date_repr = datetime.datetime.now(datetime.timezone.utc).strftime("%y%m%d")
        id = f"{date_repr}{id[len(date_repr):]}"
    if prefix:
        id = f"{prefix}-{id}"
    return id
