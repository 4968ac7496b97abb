from setuptools import setup, find_packages

# Load the version info.
#
# Note that we cannot simply import the module, since dependencies listed
# in setup() will very likely not be installed yet when setup.py run.
#
# See:
#   https://packaging.python.org/guides/single-sourcing-package-version

__version__ = None

with open("geoengine_driver/_version.py") as fp:
    exec(fp.read())

version = __version__

tests_require = [
    "pytest",
    "requests-mock",
    "time-machine>=2.8.0",
    "dirty-equals>=0.6",
]

setup(
    name="geoengine_driver",
    version=version,
    description="Flask based frontend for a workflow based geo data processing engine.",
    long_description="Flask based frontend for a workflow based geo data processing engine:"
    " operator workflows over vector, raster and plot data, executed as chunked streams.",
    packages=find_packages(include=["geoengine_driver*"]),
    include_package_data=True,
    python_requires=">=3.9",
    tests_require=tests_require,
    install_requires=[
        "flask>=2.0.0",
        "werkzeug>=3.0.3",
        "requests>=2.28.0",
        "openeo>=0.38.0",
        "gunicorn>=20.0.1",
        "numpy>=1.22.0",
        "shapely>=2.0.0",
        "flask-cors",
        "pyproj>=2.1.0",
        "python-dateutil",
        "python-json-logger~=2.0",  # Avoid breaking change in 3.1.0 https://github.com/nhairs/python-json-logger/issues/29
        "attrs>=23.1.0",
        "reretry~=0.11.8",
    ],
    extras_require={
        "dev": tests_require,
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Development Status :: 4 - Beta",
        "Operating System :: OS Independent",
    ],
)
