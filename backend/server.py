from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database, require_env, get_env
from dependencies import build_services
from routes import webhooks, billing
from services.price_catalog import PriceCatalog

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Signals Billing API")

    # Tests wire their own services on app.state
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Missing credentials or a conflicting price catalog stop the process here
    require_env("STRIPE_SECRET_KEY", "STRIPE_API_KEY")
    webhook_secret = require_env("STRIPE_WEBHOOK_SECRET")
    require_env("SUPABASE_JWT_SECRET")
    client = database.connect()
    catalog = PriceCatalog.from_env()
    for entry in catalog.entries():
        logger.info(
            "Stripe price IDs plan=%s cycle=%s price_id=%s",
            entry.plan_slug, entry.billing_cycle, entry.price_id,
        )

    services = build_services(
        client,
        catalog,
        profile_table=get_env("PROFILE_TABLE") or None,
        webhook_secret=webhook_secret,
    )
    for name, service in services.items():
        setattr(app.state, name, service)
    logger.info("Subscription services initialized (%d tracked prices)", len(catalog))

    yield

    # Shutdown
    logger.info("Shutting down Signals Billing API")
    database.close()

# Create FastAPI app
app = FastAPI(
    title="Signals Billing API",
    description="Stripe subscription state reconciliation for Signals accounts",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
