from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from config import CORS_ORIGINS
from dataBase import db, ensure_indexes
from errors import SwapOrderError
from logger import setup_logger
from routes import swap_order_routes, payment_routes

logger = setup_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ensure_indexes(db)
    logger.info("Swap order indexes ready")
    yield


app = FastAPI(title="BookWise Swap Orders API", version="1.0.0", lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SwapOrderError)
async def swap_order_error_handler(request: Request, exc: SwapOrderError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request data",
            "error": "validation_error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.get("/")
def root():
    return RedirectResponse(url="/docs")


app.include_router(swap_order_routes)
app.include_router(payment_routes)
