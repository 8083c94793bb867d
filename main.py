import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import make_engine, make_session_factory, create_tables
from errors import FeatureUnavailable, InvalidInput, LicenseError, RemoteRejected, TransientFailure
from features import FeatureRegistry
from license_client import LicenseClient
from license_manager import LicenseManager
from scheduler import LicenseCheckScheduler
from site_identity import get_site_identifier
from state_store import StateStore
from models import (
    AttemptResponse,
    CheckOutcome,
    DeactivationOutcome,
    FeatureCheckRequest,
    FeatureCheckResponse,
    FeatureListResponse,
    HealthCheckResponse,
    LicenseActivationRequest,
    LicenseActivationResponse,
    StatusDetail,
)

logger = logging.getLogger(__name__)


def build_license_manager(database_url: str = None) -> LicenseManager:
    engine = make_engine(database_url)
    create_tables(engine)
    store = StateStore(make_session_factory(engine))
    return LicenseManager(store, LicenseClient(store), get_site_identifier(settings.SITE_URL))


def create_app(license_manager: LicenseManager = None, start_scheduler: bool = True) -> FastAPI:
    manager = license_manager or build_license_manager()
    registry = FeatureRegistry(manager)
    registry.register_defaults()
    scheduler = LicenseCheckScheduler(manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(
        title="Pro License Client Service",
        description="License activation, validation and feature gating for the Pro add-on",
        version=settings.APP_VERSION,
        lifespan=lifespan
    )
    app.state.license_manager = manager
    app.state.feature_registry = registry
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LicenseError, license_error_handler)
    _add_routes(app)
    return app


async def license_error_handler(request: Request, exc: LicenseError):
    if isinstance(exc, TransientFailure):
        status_code = 503
        body = {"outcome": "transient", "message": exc.message, "retry": exc.retry_guidance}
    elif isinstance(exc, RemoteRejected):
        status_code = 403
        body = {"outcome": "rejected", "message": exc.message, "reason": exc.reason}
    elif isinstance(exc, FeatureUnavailable):
        status_code = 403
        body = {"outcome": exc.code, "message": exc.message}
    else:
        status_code = 400 if isinstance(exc, InvalidInput) else 500
        body = {"outcome": exc.code, "message": exc.message}
    return JSONResponse(status_code=status_code, content={"detail": body})


def get_license_manager(request: Request) -> LicenseManager:
    return request.app.state.license_manager


def get_feature_registry(request: Request) -> FeatureRegistry:
    return request.app.state.feature_registry


def _add_routes(app: FastAPI):
    @app.post("/api/license/activate", response_model=LicenseActivationResponse)
    async def activate_license(
        request: LicenseActivationRequest,
        manager: LicenseManager = Depends(get_license_manager)
    ):
        """
        Activate a license key for this site.

        Rejections from the license server are returned verbatim (403);
        connectivity problems return 503 with retry guidance.
        """
        result = await manager.activate(request.licenseKey)
        return {
            "success": True,
            "status": result.status,
            "expiresAt": result.expires_at,
            "maxSites": result.max_sites,
            "message": result.message
        }

    @app.post("/api/license/deactivate", response_model=DeactivationOutcome)
    async def deactivate_license(manager: LicenseManager = Depends(get_license_manager)):
        """
        Deactivate the license on this site. Local state is always cleared;
        ``remote_released`` reports whether the license server was notified.
        """
        return await manager.deactivate()

    @app.post("/api/license/validate", response_model=CheckOutcome)
    async def validate_license(manager: LicenseManager = Depends(get_license_manager)):
        """
        Check now: re-validate with the license server, bypassing the cache.
        """
        return await manager.check_now()

    @app.get("/api/license/status", response_model=StatusDetail)
    async def get_license_status(manager: LicenseManager = Depends(get_license_manager)):
        return manager.get_status_detail()

    @app.get("/api/license/attempts", response_model=List[AttemptResponse])
    async def get_license_attempts(
        limit: int = Query(20, ge=1, le=200),
        manager: LicenseManager = Depends(get_license_manager)
    ):
        """
        Recent remote attempts, newest first.
        """
        return [
            {
                "action": attempt.action,
                "result": attempt.result,
                "message": attempt.message,
                "siteIdentifier": attempt.site_identifier,
                "attemptedAt": attempt.attempted_at
            }
            for attempt in manager.store.recent_attempts(limit)
        ]

    @app.post("/api/license/feature/check", response_model=FeatureCheckResponse)
    async def check_feature(
        request: FeatureCheckRequest,
        registry: FeatureRegistry = Depends(get_feature_registry)
    ):
        """
        Check if a feature is available based on license.
        Core features are always available even without license.
        """
        try:
            registry.check(request.featureKey)
        except FeatureUnavailable as e:
            return {"featureKey": request.featureKey, "available": False, "reason": e.code}
        return {"featureKey": request.featureKey, "available": True}

    @app.get("/api/license/features", response_model=FeatureListResponse)
    async def list_features(registry: FeatureRegistry = Depends(get_feature_registry)):
        return {"available": registry.available_features(), "core": registry.core_features()}

    @app.delete("/api/license", status_code=204)
    async def reset_license(manager: LicenseManager = Depends(get_license_manager)):
        """
        Uninstall: wipe every stored license field, cache entry and attempt.
        """
        await manager.reset()

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(manager: LicenseManager = Depends(get_license_manager)):
        return {
            "status": "healthy",
            "service": "license-client",
            "version": settings.APP_VERSION,
            "siteIdentifier": manager.site_identifier,
            "licenseActive": manager.is_license_active()
        }


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
