from fastapi import FastAPI, HTTPException, Request, Depends, Path, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
import json
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager
from decimal import Decimal

from models import (
    BalanceResponse,
    ErrorResponse,
    HealthResponse,
    JournalEntryResponse,
    JournalResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    TransactionRequest,
    TransactionResponse,
    TransactionResult,
    User,
)
from services import TransactionService, get_transaction_service
from repositories import get_account_repository, get_journal_repository, get_user_repository
from auth import UserService, create_access_token, get_current_user, get_user_service
from exceptions import (
    AccountNotFoundError,
    BankingError,
    BusyError,
    ConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidCredentialsError,
    StorageFailureError,
    UserAlreadyExistsError,
)
from config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    """Configure structured logging on top of the stdlib logging module."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"

# Domain error -> HTTP status
ERROR_STATUS = {
    AccountNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    InsufficientFundsError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
    BusyError: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageFailureError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UserAlreadyExistsError: status.HTTP_400_BAD_REQUEST,
    InvalidCredentialsError: status.HTTP_401_UNAUTHORIZED,
}


def status_for(exc: BankingError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ExactJSONRequest(Request):
    """Request whose JSON body keeps number literals with a fraction as Decimal."""

    async def json(self):
        if not hasattr(self, "_json"):
            self._json = json.loads(await self.body(), parse_float=Decimal)
        return self._json


class ExactJSONRoute(APIRoute):
    def get_route_handler(self):
        handler = super().get_route_handler()

        async def exact_json_handler(request: Request):
            return await handler(ExactJSONRequest(request.scope, request.receive))

        return exact_json_handler


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Bank Account API", version=settings.app_version, debug=settings.debug)
    yield
    # Shutdown
    logger.info("Shutting down Bank Account API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account credit/debit with an append-only journal, plus user registration and login",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)
# Amounts must not pass through binary floats on the way in
app.router.route_class = ExactJSONRoute

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.perf_counter()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.perf_counter() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    account_repo=Depends(get_account_repository),
    journal_repo=Depends(get_journal_repository)
) -> TransactionService:
    return get_transaction_service(account_repo, journal_repo)


AccountNumber = Path(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")


def to_response(result: TransactionResult, message: str) -> TransactionResponse:
    return TransactionResponse(
        transactionId=result.entry.id,
        message=message,
        accountNumber=result.entry.account_number,
        type=result.entry.type,
        amount=result.entry.amount,
        balance=result.balance,
        timestamp=result.entry.timestamp,
    )

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get system statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    journal_repo=Depends(get_journal_repository),
    user_repo=Depends(get_user_repository)
):
    try:
        return HealthResponse(
            status="healthy",
            accounts_count=await account_repo.get_accounts_count(),
            journal_entries=await journal_repo.get_entries_count(),
            users_count=await user_repo.get_users_count()
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Authentication endpoints
@app.post(
    "/api/register",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register User",
    responses={400: {"model": ErrorResponse, "description": "Username already exists"}}
)
@limiter.limit(RATE_LIMIT)
async def register(
    request: Request,
    register_request: RegisterRequest,
    user_service: UserService = Depends(get_user_service)
):
    await user_service.register(
        register_request.username,
        register_request.password,
        register_request.email
    )
    return MessageResponse(message="User registered successfully")


@app.post(
    "/api/login",
    response_model=TokenResponse,
    summary="Login",
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}}
)
@limiter.limit(RATE_LIMIT)
async def login(
    request: Request,
    login_request: LoginRequest,
    user_service: UserService = Depends(get_user_service)
):
    user = await user_service.authenticate(login_request.username, login_request.password)
    logger.info("User logged in", username=user.username)
    return TokenResponse(token=create_access_token(user.username))

# Account endpoints
TRANSACTION_RESPONSES = {
    200: {"description": "Transaction processed successfully"},
    400: {"model": ErrorResponse, "description": "Invalid amount or insufficient funds"},
    401: {"description": "Missing or invalid token"},
    404: {"model": ErrorResponse, "description": "Account not found"},
    409: {"model": ErrorResponse, "description": "Concurrent modification"},
    429: {"description": "Rate limit exceeded"},
    503: {"model": ErrorResponse, "description": "Account busy or storage unavailable"},
}


@app.post(
    "/api/account/credit",
    response_model=TransactionResponse,
    summary="Credit Account",
    responses=TRANSACTION_RESPONSES
)
@limiter.limit(RATE_LIMIT)
async def credit(
    request: Request,
    transaction_request: TransactionRequest,
    service: TransactionService = Depends(get_service),
    user: User = Depends(get_current_user)
):
    logger.info(
        "Credit request received",
        account_number=transaction_request.accountNumber,
        username=user.username
    )
    result = await service.credit(transaction_request.accountNumber, transaction_request.amount)
    logger.info(
        "Credit request completed successfully",
        transaction_id=result.entry.id,
        account_number=transaction_request.accountNumber
    )
    return to_response(result, "Credit successful")


@app.post(
    "/api/account/debit",
    response_model=TransactionResponse,
    summary="Debit Account",
    responses=TRANSACTION_RESPONSES
)
@limiter.limit(RATE_LIMIT)
async def debit(
    request: Request,
    transaction_request: TransactionRequest,
    service: TransactionService = Depends(get_service),
    user: User = Depends(get_current_user)
):
    logger.info(
        "Debit request received",
        account_number=transaction_request.accountNumber,
        username=user.username
    )
    result = await service.debit(transaction_request.accountNumber, transaction_request.amount)
    logger.info(
        "Debit request completed successfully",
        transaction_id=result.entry.id,
        account_number=transaction_request.accountNumber
    )
    return to_response(result, "Debit successful")


@app.get("/api/account/{account_number}", response_model=BalanceResponse, summary="Account Balance")
async def get_balance(
    account_number: str = AccountNumber,
    service: TransactionService = Depends(get_service),
    user: User = Depends(get_current_user)
):
    account = await service.get_account(account_number)
    return BalanceResponse(accountNumber=account.account_number, balance=account.balance)


@app.get("/api/account/{account_number}/journal", response_model=JournalResponse, summary="Account Journal")
async def get_journal(
    account_number: str = AccountNumber,
    service: TransactionService = Depends(get_service),
    user: User = Depends(get_current_user)
):
    entries = await service.list_journal(account_number)
    return JournalResponse(
        accountNumber=account_number,
        entries=[JournalEntryResponse.from_entry(e) for e in entries]
    )

# Exception handlers
def error_response(status_code: int, detail: str, error_code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(mode="json"),
        headers=headers
    )


@app.exception_handler(BankingError)
async def banking_exception_handler(request: Request, exc: BankingError):
    status_code = status_for(exc)
    logger.warning(
        "Request failed with domain error",
        method=request.method,
        url=str(request.url),
        error_code=exc.code,
        status_code=status_code,
        detail=exc.message
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return error_response(status_code, exc.message, exc.code, headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        exc.status_code,
        str(exc.detail),
        f"HTTP_{exc.status_code}",
        getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return error_response(500, "Internal server error", "INTERNAL_ERROR")

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
