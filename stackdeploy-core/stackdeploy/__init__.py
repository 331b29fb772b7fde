from stackdeploy.version import __version__

name = "stackdeploy"

__all__ = ["__version__", "name"]
