"""
Models initialization file
"""

from .treatment import Treatment

__all__ = [
    "Treatment",
]
