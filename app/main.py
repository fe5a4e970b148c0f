from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import BillingError
from app.api.v1.router import api_router
from app.core.startup import lifespan

VERSION = "1.0.0"

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Subscription and payment consistency for multi-tenant workspaces.",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API v1 Hub (prefixed)
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    body = exc.to_dict()
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    headers = {"Retry-After": "60"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
