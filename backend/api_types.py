from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Number = Union[int, float]


# Fee Estimation API Types
class FeeEstimateRequest(BaseModel):
    milligas_limit: Number = Field(ge=0, allow_inf_nan=False)
    storage_limit: Number = Field(allow_inf_nan=False)  # Negative when the operation frees storage
    op_size: int = Field(ge=0)
    base_fee_mutez: Optional[Number] = Field(default=None, ge=0, allow_inf_nan=False)
    fee_per_storage_byte_mutez: Optional[Number] = Field(default=None, ge=0, allow_inf_nan=False)


class OperationFeeEstimate(BaseModel):
    milligas_limit: Number
    storage_limit_raw: Number
    op_size: int
    base_fee_mutez: Optional[Number] = None
    fee_per_storage_byte_mutez: Number
    gas_limit: int
    consumed_milligas: Number
    storage_limit: Number
    burn_fee_mutez: int
    operation_fee_mutez: float  # Unrounded
    minimal_fee_mutez: int
    suggested_fee_mutez: int
    using_base_fee_mutez: Optional[Number] = None
    total_cost: int


class FeeEstimateResponse(OperationFeeEstimate):
    report: str  # Markdown formatted report


# Batch estimation takes the property names of the node's simulation results
class OperationProperties(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    milligas_limit: Number = Field(alias="milligasLimit", ge=0, allow_inf_nan=False)
    storage_limit: Number = Field(alias="storageLimit", allow_inf_nan=False)
    op_size: int = Field(alias="opSize", ge=0)
    base_fee_mutez: Optional[Number] = Field(default=None, alias="baseFeeMutez", ge=0, allow_inf_nan=False)
    minimal_fee_per_storage_byte_mutez: Optional[Number] = Field(
        default=None, alias="minimalFeePerStorageByteMutez", ge=0, allow_inf_nan=False
    )


class BatchFeeEstimateRequest(BaseModel):
    operations: list[OperationProperties]


class BatchFeeEstimateResponse(BaseModel):
    operations: list[OperationFeeEstimate]
    total_gas_limit: int
    total_storage_limit: Number
    total_burn_fee_mutez: int
    total_minimal_fee_mutez: int
    total_suggested_fee_mutez: int
    total_cost: int


class FeePolicyResponse(BaseModel):
    minimal_fee_mutez: Number
    minimal_fee_per_byte_mutez: Number
    minimal_fee_per_gas_mutez: Number
    gas_buffer: Number
    fee_per_storage_byte_mutez: Number
