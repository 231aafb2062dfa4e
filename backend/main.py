from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from config import settings
from database import init_db
from payment_errors import PaymentError
from purchase_validation import describe_validation_error
from payment_api import functions_router as payment_functions_router, router as payments_router
from credentials_api import router as credentials_router
from public_data import router as public_data_router
from protected_data import router as protected_data_router
from access_gate import router as access_router
from tenants import router as tenants_router
from platform_admin import router as platform_admin_router
from staff_operations import router as staff_operations_router

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# Strip whitespace from each origin to prevent configuration errors
CORS_ORIGINS = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,
)


def _with_cors(request: Request, response):
    """Errors raised inside dependencies skip the middleware headers"""
    origin = request.headers.get("origin")
    if origin and origin in CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


# ==================== CUSTOM EXCEPTION HANDLERS ====================

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"❌ {type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return _with_cors(request, JSONResponse(status_code=exc.status_code, content={"error": exc.message}))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Edge functions answer bad input with 400 and a single readable message.
    The rest of the API keeps FastAPI's 422 detail list.
    """
    if request.url.path.startswith("/functions/"):
        field, message = describe_validation_error(exc)
        return _with_cors(request, JSONResponse(
            status_code=400,
            content={"error": f"Validation failed: {field}: {message}"}
        ))
    return _with_cors(request, await request_validation_exception_handler(request, exc))


@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = await http_exception_handler(request, exc)
    return _with_cors(request, response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all for unexpected errors. Internals never reach the client."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return _with_cors(request, JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    ))

# ==================== END EXCEPTION HANDLERS ====================

app.include_router(payment_functions_router)
app.include_router(payments_router)
app.include_router(credentials_router)
app.include_router(public_data_router)
app.include_router(protected_data_router)
app.include_router(access_router)
app.include_router(tenants_router)
app.include_router(platform_admin_router)
app.include_router(staff_operations_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info("Starting application initialization...")
    logger.info("=" * 60)

    try:
        await init_db()
        logger.info("✅ Database initialization successful!")
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise


@app.get("/config")
async def public_config():
    """Environment the single-page app reads at startup. Publishable values only."""
    return {
        "backendUrl": settings.BACKEND_URL,
        "apiKey": settings.PUBLIC_API_KEY,
        "gatewayPublishableKey": settings.GATEWAY_PUBLISHABLE_KEY,
        "checkoutScriptUrl": settings.RAZORPAY_CHECKOUT_URL,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
