"""autobuild: runs coding agents over a dependency-ordered issue queue."""

__version__ = "0.1.0"
