"""
GPI Document Hub - Routes Package

API routers for the library conversion service.
"""

from .library_conversion import (
    router as library_conversion_router,
    set_db as set_library_conversion_db,
    set_directory as set_library_conversion_directory,
)

__all__ = [
    'library_conversion_router',
    'set_library_conversion_db',
    'set_library_conversion_directory',
]
