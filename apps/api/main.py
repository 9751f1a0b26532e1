from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv
import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file FIRST
load_dotenv()

from database import create_db_and_tables
from errors import ClinicError
from middleware.activity_logger import ActivityLoggingMiddleware
from rate_limit import limiter
from routers import admin, appointments, auth, payments, settings
from services.payment_gateway import build_gateway_from_env
from utils.notification_service import build_default_dispatcher
from validators.business_rules import ClinicRules
from slowapi.errors import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    rules = ClinicRules.from_env()
    app.state.rules = rules
    app.state.dispatcher = build_default_dispatcher(rules.notification_timeout_seconds)
    app.state.payment_gateway = build_gateway_from_env()
    logger.info(f"{rules.clinic_name} API started (pricing mode: {rules.pricing_mode})")
    yield


app = FastAPI(
    title="Clinic Booking API",
    description="Appointment booking, OTP registration and online payments for the clinic",
    version="1.0.0",
    lifespan=lifespan
)

# Set up rate limiter
app.state.limiter = limiter


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, exc: ClinicError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return _error(400, message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return _error(429, "Too many requests. Please try again later.")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _error(500, "Internal server error")


# CORS configuration
origins = [
    "http://localhost:3000",  # Development frontend
    os.getenv("FRONTEND_URL", "http://localhost:3000"),  # Production frontend from env
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin"],
)

# Activity logging for tracked user actions
app.add_middleware(ActivityLoggingMiddleware)

# Include routers
app.include_router(auth.router)
app.include_router(appointments.router)
app.include_router(payments.router)
app.include_router(settings.router)
app.include_router(admin.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Clinic Booking API"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
