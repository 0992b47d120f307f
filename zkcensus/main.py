"""
zk-census API
Anonymous, sybil-resistant census ledger over Groth16 proofs
"""

from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone
import logging
import sys

from zkcensus.config import settings
from zkcensus.database import get_db, init_db, close_db, check_connection
from zkcensus.errors import CensusError, InvalidNullifier
from zkcensus.middleware.auth_middleware import get_current_caller
from zkcensus.models import CensusStats
from zkcensus.schemas import (
    AckResponse,
    CensusCreate,
    CensusListResponse,
    CensusResponse,
    CensusStatsResponse,
    CurrentCaller,
    DistributionResponse,
    ErrorResponse,
    GlobalStatsResponse,
    HealthResponse,
    MerkleRootUpdate,
    NullifierStatusResponse,
    ProofSubmission,
    ProofSubmissionResponse,
    ProofVerifyResponse,
    decode_hex,
)
from zkcensus.services.census_service import CensusService, get_census_service
from zkcensus.services.crypto_service import get_crypto_service
from zkcensus.services.nullifier_service import get_nullifier_registry

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Anonymous, sybil-resistant census with zero-knowledge eligibility proofs",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _stats_response(stats: CensusStats) -> CensusStatsResponse:
    return CensusStatsResponse(
        total_members=stats.total_members,
        age_distribution=stats.age_distribution,
        continent_distribution=stats.continent_distribution,
        last_updated=stats.last_updated,
    )


# ============================================================================
# Startup and Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    logger.info("Starting zk-census...")

    try:
        await init_db()
        logger.info("Database initialized")

        # Redis is an optional admission gate; the database claim stands alone
        try:
            await get_nullifier_registry().init_redis()
        except Exception as e:
            logger.warning(f"Redis connection failed, continuing without it: {e}")

        health = get_crypto_service().health_check()
        if health["status"] == "healthy":
            logger.info(f"Verifier ready (default key loaded: {health['default_key_loaded']})")
        else:
            logger.error(f"Verifier unhealthy: {health.get('error')}")

        logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} started successfully")

    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down zk-census...")

    try:
        await get_nullifier_registry().close_redis()
        await close_db()
        logger.info("Shutdown complete")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)


# ============================================================================
# Health
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    crypto_health = get_crypto_service().health_check()
    database_ok = await check_connection()
    healthy = crypto_health["status"] == "healthy" and database_ok

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.APP_VERSION,
        crypto_library=crypto_health.get("library", "unknown"),
        database="connected" if database_ok else "error"
    )


# ============================================================================
# Census Endpoints
# ============================================================================

@app.post(
    "/api/v1/censuses",
    response_model=CensusResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Census"]
)
async def initialize_census(
    request: CensusCreate,
    current_caller: CurrentCaller = Depends(get_current_caller),
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Create a census; the caller becomes its creator"""
    census = await census_service.initialize(
        db,
        census_id=request.census_id,
        name=request.name,
        description=request.description,
        enable_location=request.enable_location,
        min_age=request.min_age,
        creator=current_caller.identity,
        verification_key=request.verification_key,
    )
    return CensusResponse.model_validate(census)


@app.get("/api/v1/censuses", response_model=CensusListResponse, tags=["Census"])
async def list_censuses(
    active_only: bool = False,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """List censuses, newest first"""
    censuses = await census_service.list_censuses(db, active_only=active_only)
    return CensusListResponse(
        censuses=[CensusResponse.model_validate(c) for c in censuses],
        count=len(censuses)
    )


@app.get("/api/v1/censuses/{census_id}", response_model=CensusResponse, tags=["Census"])
async def get_census(
    census_id: str,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Get census metadata"""
    census = await census_service.get_census(db, census_id)
    return CensusResponse.model_validate(census)


@app.get(
    "/api/v1/censuses/{census_id}/stats",
    response_model=CensusStatsResponse,
    tags=["Census"]
)
async def get_census_stats(
    census_id: str,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Get aggregate statistics of a census"""
    stats = await census_service.get_stats(db, census_id)
    return _stats_response(stats)


# ============================================================================
# Registration Endpoints
# ============================================================================

@app.post(
    "/api/v1/censuses/{census_id}/proofs",
    response_model=ProofSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Registration"]
)
async def submit_proof(
    census_id: str,
    submission: ProofSubmission,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """
    Register one anonymous participant

    No credentials are required; eligibility is established by the proof
    and uniqueness by the nullifier.
    """
    index = await census_service.register(
        db,
        census_id=census_id,
        nullifier=submission.nullifier_bytes(),
        age_bracket=submission.age_bracket,
        continent=submission.continent,
        proof=submission.proof_bytes(),
        timestamp=submission.timestamp,
    )
    stats = await census_service.get_stats(db, census_id)
    return ProofSubmissionResponse(success=True, index=index, stats=_stats_response(stats))


@app.post(
    "/api/v1/censuses/{census_id}/proofs/verify",
    response_model=ProofVerifyResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Registration"]
)
async def verify_proof(
    census_id: str,
    submission: ProofSubmission,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Check a submission without registering it"""
    is_valid = await census_service.verify_submission(
        db,
        census_id=census_id,
        nullifier=submission.nullifier_bytes(),
        age_bracket=submission.age_bracket,
        continent=submission.continent,
        proof=submission.proof_bytes(),
        timestamp=submission.timestamp,
    )
    return ProofVerifyResponse(success=True, valid=is_valid)


@app.get(
    "/api/v1/censuses/{census_id}/nullifiers/{nullifier}",
    response_model=NullifierStatusResponse,
    tags=["Registration"]
)
async def check_nullifier(
    census_id: str,
    nullifier: str,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Whether a nullifier has already registered in a census"""
    nullifier_bytes = decode_hex(nullifier, InvalidNullifier)
    exists = await census_service.is_nullifier_used(db, census_id, nullifier_bytes)
    return NullifierStatusResponse(
        census_id=census_id,
        nullifier=nullifier_bytes.hex(),
        exists=exists
    )


# ============================================================================
# Distribution Endpoints
# ============================================================================

@app.get(
    "/api/v1/censuses/{census_id}/stats/age",
    response_model=DistributionResponse,
    tags=["Census"]
)
async def get_age_distribution(
    census_id: str,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Member counts per age bracket, keyed by bracket name"""
    distribution = await census_service.get_age_distribution(db, census_id)
    return DistributionResponse(
        census_id=census_id,
        distribution=distribution,
        total=sum(distribution.values())
    )


@app.get(
    "/api/v1/censuses/{census_id}/stats/location",
    response_model=DistributionResponse,
    tags=["Census"]
)
async def get_location_distribution(
    census_id: str,
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Member counts per continent, keyed by continent name"""
    distribution = await census_service.get_location_distribution(db, census_id)
    return DistributionResponse(
        census_id=census_id,
        distribution=distribution,
        total=sum(distribution.values())
    )


# ============================================================================
# Administration Endpoints
# ============================================================================

@app.put(
    "/api/v1/censuses/{census_id}/merkle-root",
    response_model=CensusResponse,
    tags=["Administration"]
)
async def update_merkle_root(
    census_id: str,
    request: MerkleRootUpdate,
    current_caller: CurrentCaller = Depends(get_current_caller),
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Anchor a new membership tree (creator only)"""
    census = await census_service.update_anchor(
        db,
        census_id=census_id,
        new_root=request.root_bytes(),
        ipfs_hash=request.ipfs_hash,
        caller=current_caller.identity,
    )
    return CensusResponse.model_validate(census)


@app.post(
    "/api/v1/censuses/{census_id}/close",
    response_model=AckResponse,
    tags=["Administration"]
)
async def close_census(
    census_id: str,
    current_caller: CurrentCaller = Depends(get_current_caller),
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Stop accepting registrations (creator only)"""
    await census_service.close(db, census_id=census_id, caller=current_caller.identity)
    return AckResponse(success=True, census_id=census_id, message="Census closed")


@app.get("/api/v1/stats", response_model=GlobalStatsResponse, tags=["Census"])
async def get_global_stats(
    census_service: CensusService = Depends(get_census_service),
    db: AsyncSession = Depends(get_db)
):
    """Counts across all censuses"""
    return GlobalStatsResponse(**await census_service.get_global_stats(db))


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(CensusError)
async def census_error_handler(request: Request, exc: CensusError):
    """Render census errors with their stable code"""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Custom HTTP exception handler"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "code": "NOT_AUTHENTICATED" if exc.status_code == 401 else "HTTP_ERROR"
        },
        headers=exc.headers
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """General exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": str(exc) if settings.DEBUG else "Internal server error",
            "code": "INTERNAL_ERROR"
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "zkcensus.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
