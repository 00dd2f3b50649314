"""fanout-ci: build one artifact, fan it out to a test matrix, aggregate coverage.

The package root stays side-effect free: no config loading and no logging setup
happen at import time. Import the planes directly (``fanout_ci.control_plane``,
``fanout_ci.planning`` ...) for the public API.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
