"""
FastAPI application entrypoint for the ride lifecycle & pricing backend.

Provides:
- Health check
- Fare quotes and the ride lifecycle (/rides/*)
- Control-hub analytics (/hub/*)

Configuration:
- DATABASE_URL: Postgres connection string
- AUTO_CREATE_TABLES: optional (default true); create tables on startup
- PRICING_BASE_FARE, PRICING_PER_KM_RATE, PRICING_UTC_OFFSET_HOURS: optional pricing overrides
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.db import init_db
from src.api.routers import hub as hub_router
from src.api.routers import rides as rides_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

openapi_tags = [
    {"name": "health", "description": "Health and readiness endpoints."},
    {"name": "rides", "description": "Fare quotes, ride requests, driver lifecycle actions, and history."},
    {"name": "hub", "description": "Operations analytics: timings, rejections, request heatmap."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Ride Lifecycle Backend",
    description="Ride lifecycle and pricing API for rider, driver and hub views.",
    version="0.1.0",
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)

# Basic permissive CORS for early development; tighten for production later.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rides_router.router)
app.include_router(hub_router.router)


@app.get(
    "/",
    tags=["health"],
    summary="Health check",
    description="Simple health check endpoint.",
    operation_id="health_check",
)
def health_check():
    """Return a simple health response."""
    return {"message": "Healthy"}
