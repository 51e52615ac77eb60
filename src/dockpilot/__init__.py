"""DockPilot - Docker dashboard backend.

This package provides safe environment-variable reconfiguration for running
containers: the container is recreated under its original name, and restored
from a backup if anything goes wrong.
"""

__version__ = "0.1.0"
