from .interfaces import IStorageBinder

__all__ = ["IStorageBinder"]
