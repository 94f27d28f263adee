"""
Relay Console - management console for a fleet of proxy relay nodes.

Layout:
- clients/api.py: resource client for the remote authority
- core/: settings, session, background tasks
- services/: protocol schema, entity store, lifecycle orchestrator
"""

__version__ = "1.0.0"
