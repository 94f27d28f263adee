from .orchestrator import Console

__all__ = ["Console"]
