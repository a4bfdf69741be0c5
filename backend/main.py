# backend/main.py
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from api_types import (
    BatchFeeEstimateRequest,
    BatchFeeEstimateResponse,
    FeeEstimateRequest,
    FeeEstimateResponse,
    FeePolicyResponse,
)
from fee_estimator import estimate_batch, estimate_fees, get_fee_policy, is_finite_number

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI()

# Add CORS middleware to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept"],
    expose_headers=["Content-Length"],
    max_age=600,  # How long the results of a preflight request can be cached (in seconds)
)


def _non_finite_fields(result: dict) -> list[str]:
    """Names of numeric figures in an estimate that do not fit in a float."""
    return [
        key for key, value in result.items()
        if isinstance(value, (int, float)) and not is_finite_number(value)
    ]


@app.post("/api/estimate", response_model=FeeEstimateResponse)
async def estimate_operation(request: FeeEstimateRequest):
    """
    Estimates gas limit, storage limit and fees for a simulated operation.
    """
    try:
        result = estimate_fees(
            milligas_limit=request.milligas_limit,
            storage_limit=request.storage_limit,
            op_size=request.op_size,
            base_fee_mutez=request.base_fee_mutez,
            fee_per_storage_byte_mutez=request.fee_per_storage_byte_mutez,
        )
    except Exception as e:
        logger.error(f"Fee estimation error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    overflowed = _non_finite_fields(result)
    if overflowed:
        raise HTTPException(
            status_code=422, detail=f"Inputs are too large to estimate: {', '.join(overflowed)} overflowed."
        )

    return FeeEstimateResponse(**result)


@app.post("/api/estimate/batch", response_model=BatchFeeEstimateResponse)
async def estimate_operations(request: BatchFeeEstimateRequest):
    """
    Estimates every operation of a batch and the batch totals.
    """
    if not request.operations:
        raise HTTPException(status_code=400, detail="Please provide at least one operation to estimate.")

    operations = [op.model_dump(by_alias=True, exclude_none=True) for op in request.operations]
    try:
        result = estimate_batch(operations)
    except Exception as e:
        logger.error(f"Batch fee estimation error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    for index, operation in enumerate(result["operations"]):
        overflowed = _non_finite_fields(operation)
        if overflowed:
            raise HTTPException(
                status_code=422,
                detail=f"Operation {index} is too large to estimate: {', '.join(overflowed)} overflowed.",
            )

    return BatchFeeEstimateResponse(**result)


@app.get("/api/policy", response_model=FeePolicyResponse)
async def fee_policy():
    """
    Returns the fee policy used for estimates.
    """
    return FeePolicyResponse(**get_fee_policy().to_dict())


@app.get("/api/health")
async def health_check():
    """
    Health check endpoint.
    """
    return {"status": "ok", "version": "0.1.0"}
