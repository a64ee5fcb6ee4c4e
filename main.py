from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from app.api import projects, quotes, work_orders
from app.config import settings
from app.database import engine
from app.models import Base
from app.services.dependency import to_http_exception
from app.services.errors import LifecycleError

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Field Ops Back Office API", version="1.0.0")


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Backstop for typed failures a router did not translate itself"""
    http_error = to_http_exception(exc)
    logger.warning(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Include routers
app.include_router(quotes.router, prefix="/api", tags=["Quotes"])
app.include_router(work_orders.router, prefix="/api", tags=["Work Orders"])
app.include_router(projects.router, prefix="/api", tags=["Projects"])


@app.get("/")
async def root():
    return {"message": "Field Ops Back Office API is running"}


@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}
