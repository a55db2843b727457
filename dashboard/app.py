"""FastAPI application for the MeterLab calibration workbench."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.errors import MeterLabError
from dashboard.api import router as api_v1_router, shutdown_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_service()


app = FastAPI(title="MeterLab Calibration Workbench", version="0.1.0", lifespan=lifespan)

app.include_router(api_v1_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MeterLabError)
async def meterlab_error_handler(request: Request, exc: MeterLabError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {details}"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


@app.get("/health")
async def health() -> dict:
    return {"success": True, "status": "ok"}
