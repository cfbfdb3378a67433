from fastapi import APIRouter
from app.api.routes_health import router as health_router
from app.api.routes_migration import router as migration_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(migration_router, tags=["photo-migration"])
