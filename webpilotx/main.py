import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from webpilotx.config import settings
from webpilotx.modules.pages import routes as pages_routes
from webpilotx.modules.deployments import routes as deployments_routes
from webpilotx.modules.deployments import worker_registry
from webpilotx.modules.webhooks import routes as webhooks_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                    (b"X-XSS-Protection", b"1; mode=block"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(pages_routes.router, prefix="/api/v1")
app.include_router(deployments_routes.router, prefix="/api/v1")
app.include_router(webhooks_routes.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    settings.working_trees_dir.mkdir(parents=True, exist_ok=True)
    settings.deployment_logs_dir.mkdir(parents=True, exist_ok=True)

    from webpilotx.modules.webhooks.secret import get_or_create_webhook_secret
    get_or_create_webhook_secret()

    if settings.reconcile_orphans_on_startup:
        from webpilotx.database.supabase_client import SupabaseClient
        from webpilotx.modules.deployments.service import DeploymentService
        try:
            reconciled = DeploymentService(SupabaseClient.get_service_client()).reconcile_orphaned_deployments()
            logger.info(f"Reconciled {len(reconciled)} orphaned deployment(s)")
        except Exception as e:
            logger.error(f"Could not reconcile orphaned deployments: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    in_flight = worker_registry.active_deployments()
    if in_flight:
        logger.warning(f"Shutting down with deployments still running: {in_flight}")
    logger.info("Application shutdown")


@app.get("/")
async def root():
    return {"message": "Welcome to webpilotx-backend", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness check: extend here with DB checks if needed."""
    return {"status": "ready"}
