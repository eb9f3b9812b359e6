from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from render_worker.config import settings
from render_worker.middleware import add_error_handling_middleware
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.app_name,
    description="Asynchronous video rendering worker",
    version=settings.app_version,
    debug=settings.debug
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add error handling middleware
add_error_handling_middleware(app)

# Include routers
from render_worker.routes import health, videos, websocket
from render_worker.services.scheduler import init_worker_pool, shutdown_worker_pool, get_worker_pool
from render_worker.services.gateway import init_gateway, shutdown_gateway

app.include_router(health.router)
app.include_router(videos.router)
app.include_router(websocket.router)

# Worker pool lifecycle
@app.on_event("startup")
async def _startup():
    # The pool runs its recovery sweep before accepting new jobs
    await init_worker_pool(settings)
    init_gateway(get_worker_pool(), settings.api_key)
    logger.info(f"{settings.app_name} running on port {settings.port}")
    logger.info(f"Video creation endpoint available at http://localhost:{settings.port}/create-video")


@app.on_event("shutdown")
async def _shutdown():
    shutdown_gateway()
    await shutdown_worker_pool()


def run():
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
