from .image import Image
from .clone import Clone, CloneStatus, CloneStep

__all__ = ["Image", "Clone", "CloneStatus", "CloneStep"]
