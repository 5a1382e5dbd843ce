"""
Services package - business logic layer.

Import concrete services from their modules, e.g.:
    from timetiles.services.import_service import ImportService
"""

from timetiles.services.base import BaseService

__all__ = [
    "BaseService",
]
