from .image import IImageRepository
from .clone import ICloneRepository

__all__ = ["IImageRepository", "ICloneRepository"]
