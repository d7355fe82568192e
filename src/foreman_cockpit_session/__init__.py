"""
Foreman web console session bridge.

Authenticates a cockpit-ws session, looks up the host in Foreman, opens a raw
upgraded connection through the host's remote execution proxy and relays
bytes between it and stdin/stdout.
"""

__version__ = "1.0.0"
