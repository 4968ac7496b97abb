from geoengine_driver._version import __version__
