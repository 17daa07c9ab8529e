"""FastAPI application entry point"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional
import logging

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from devmetrics.config.settings import settings
from devmetrics.errors import CategoryError
from devmetrics.jobs.sync_jobs import normalize_sync_mode
from devmetrics.orchestrator_sync import SYNC_MODE_FULL, SYNC_MODE_INCREMENTAL
from devmetrics.runtime import Runtime, build_runtime
from devmetrics.services.category_service import CategoryService
from devmetrics.services.tracking_service import set_repository_tracking

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class CategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None
    color: Optional[str] = None


class TrackingUpdate(BaseModel):
    tracked: bool


class CategoryAssignment(BaseModel):
    category_id: Optional[int] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


def _serialize_category(category) -> Dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "color": category.color,
        "isDefault": category.is_default,
        "organizationId": category.organization_id,
    }


def create_app(runtime_factory: Callable[[], Runtime] = build_runtime) -> FastAPI:
    """Build the API; the runtime (store handle, orchestrator, metrics) lives for the app lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = runtime_factory()
        app.state.runtime = runtime
        logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")
        try:
            yield
        finally:
            runtime.close()

    app = FastAPI(
        title="DevMetrics",
        description="GitHub engineering activity ingestion and metrics",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def runtime_of(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "devmetrics",
            "version": settings.APP_VERSION,
        }

    @app.post("/api/sync/organizations/{organization_id}")
    async def sync_organization(
        organization_id: int,
        request: Request,
        mode: Optional[str] = None,
        include_pull_requests: bool = True,
    ):
        """Run an organization sync and return its result"""
        logger.info(f"Organization sync triggered for {organization_id}")
        result = await runtime_of(request).orchestrator.sync_organization(
            organization_id,
            mode=normalize_sync_mode(mode, default=SYNC_MODE_FULL),
            include_pull_requests=include_pull_requests,
        )
        return result.to_dict()

    @app.post("/api/sync/repositories/{repository_id}")
    async def sync_repository(repository_id: int, request: Request, mode: Optional[str] = None):
        """Run a repository sync and return its result"""
        logger.info(f"Repository sync triggered for {repository_id}")
        result = await runtime_of(request).orchestrator.sync_repository(
            repository_id,
            mode=normalize_sync_mode(mode, default=SYNC_MODE_INCREMENTAL),
        )
        return result.to_dict()

    @app.post("/api/events/github")
    async def github_event(
        payload: Dict[str, Any],
        request: Request,
        x_github_event: str = Header(...),
    ):
        """Apply an already-verified GitHub event delivery"""
        result = await runtime_of(request).orchestrator.ingest_event(x_github_event, payload)
        return result.to_dict()

    @app.get("/api/metrics/summary")
    async def metrics_summary(
        request: Request,
        organization_id: int = Query(..., alias="organizationId"),
        window_days: Optional[int] = Query(None, alias="windowDays", ge=1),
    ):
        return runtime_of(request).metrics.get_summary(organization_id, window_days).to_dict()

    @app.get("/api/metrics/time-series")
    async def metrics_time_series(
        request: Request,
        organization_id: int = Query(..., alias="organizationId"),
        days: int = Query(14, ge=1, le=365),
        repository_id: Optional[int] = Query(None, alias="repositoryId"),
    ):
        return runtime_of(request).metrics.get_time_series(organization_id, days, repository_id).to_dict()

    @app.get("/api/metrics/team-performance")
    async def metrics_team_performance(
        request: Request,
        organization_id: int = Query(..., alias="organizationId"),
        days: Optional[int] = Query(None, ge=1),
        repository_ids: Optional[List[int]] = Query(None, alias="repositoryIds"),
        top_n: Optional[int] = Query(None, alias="topN", ge=1),
    ):
        return runtime_of(request).metrics.get_team_performance(
            organization_id,
            days=days,
            repository_ids=repository_ids,
            top_n=top_n,
        ).to_dict()

    @app.get("/api/metrics/category-distribution")
    async def metrics_category_distribution(
        request: Request,
        organization_id: int = Query(..., alias="organizationId"),
        days: Optional[int] = Query(None, ge=1),
    ):
        shares = runtime_of(request).metrics.get_category_distribution(organization_id, days)
        return {"categories": [share.to_dict() for share in shares]}

    @app.get("/api/metrics/review-coverage")
    async def metrics_review_coverage(
        request: Request,
        organization_id: int = Query(..., alias="organizationId"),
        days: Optional[int] = Query(None, ge=1),
    ):
        return runtime_of(request).metrics.get_review_coverage(organization_id, days).to_dict()

    @app.get("/api/organizations/{organization_id}/categories")
    async def list_categories(organization_id: int, request: Request):
        db = runtime_of(request).database.session()
        try:
            categories = CategoryService(db).list_for_organization(organization_id)
            return {"categories": [_serialize_category(category) for category in categories]}
        finally:
            db.close()

    @app.post("/api/organizations/{organization_id}/categories", status_code=201)
    async def create_category(organization_id: int, body: CategoryCreate, request: Request):
        db = runtime_of(request).database.session()
        try:
            category = CategoryService(db).create(organization_id, body.name, body.description, body.color)
            return _serialize_category(category)
        except CategoryError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))
        finally:
            db.close()

    @app.delete("/api/organizations/{organization_id}/categories/{category_id}", status_code=204)
    async def delete_category(organization_id: int, category_id: int, request: Request):
        db = runtime_of(request).database.session()
        try:
            CategoryService(db).delete(organization_id, category_id)
        except CategoryError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))
        finally:
            db.close()

    @app.put("/api/repositories/{repository_id}/tracking")
    async def update_tracking(repository_id: int, body: TrackingUpdate, request: Request):
        db = runtime_of(request).database.session()
        try:
            repository = set_repository_tracking(db, repository_id, body.tracked)
            return {"id": repository.id, "fullName": repository.full_name, "isTracked": repository.is_tracked}
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        finally:
            db.close()

    @app.put("/api/pull-requests/{pull_request_id}/category")
    async def assign_category(pull_request_id: int, body: CategoryAssignment, request: Request):
        db = runtime_of(request).database.session()
        try:
            pull_request = CategoryService(db).assign_to_pull_request(
                pull_request_id, body.category_id, body.confidence
            )
            return {
                "id": pull_request.id,
                "categoryId": pull_request.category_id,
                "categoryConfidence": pull_request.category_confidence,
            }
        except CategoryError as e:
            raise HTTPException(status_code=e.status_code, detail=str(e))
        finally:
            db.close()

    return app


app = create_app()


def lambda_handler(event: Dict[str, Any], context: Any):
    """
    Serverless entrypoint for HTTP traffic.

    Scheduled sync events (carrying an "action") go to the event handler;
    everything else is treated as an API Gateway request.
    """
    if isinstance(event, dict) and "action" in event:
        from devmetrics.handler import lambda_handler as sync_handler
        return sync_handler(event, context)

    from mangum import Mangum
    handler = Mangum(app)
    return handler(event, context)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "devmetrics.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
