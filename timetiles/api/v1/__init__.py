"""
API v1 router - aggregates all endpoint routers.
"""

from fastapi import APIRouter

from timetiles.api.v1.audit_logs import router as audit_logs_router
from timetiles.api.v1.catalogs import router as catalogs_router
from timetiles.api.v1.datasets import router as datasets_router
from timetiles.api.v1.events import router as events_router
from timetiles.api.v1.geocoding import router as geocoding_router
from timetiles.api.v1.import_jobs import router as import_jobs_router
from timetiles.api.v1.imports import router as imports_router
from timetiles.api.v1.scheduled_imports import router as scheduled_imports_router
from timetiles.api.v1.webhooks import router as webhooks_router

api_router = APIRouter()

# Include all routers with their prefixes and tags
api_router.include_router(catalogs_router, prefix="/catalogs", tags=["Catalogs"])
api_router.include_router(datasets_router, prefix="/datasets", tags=["Datasets"])
api_router.include_router(imports_router, prefix="/imports", tags=["Imports"])
api_router.include_router(import_jobs_router, prefix="/import-jobs", tags=["Import Jobs"])
api_router.include_router(events_router, prefix="/events", tags=["Events"])
api_router.include_router(scheduled_imports_router, prefix="/scheduled-imports", tags=["Scheduled Imports"])
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(geocoding_router, prefix="/geocoding", tags=["Geocoding"])
api_router.include_router(audit_logs_router, prefix="/audit-logs", tags=["Audit Logs"])
