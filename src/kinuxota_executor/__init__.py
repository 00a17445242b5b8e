"""
KinuxOTA update executor.

Installs a staged KinuxOTA client binary over the live one, restarts the
client (systemd unit or free process), verifies its health and rolls back
to the previous binary if any step fails.
"""

__version__ = "0.1.0"
