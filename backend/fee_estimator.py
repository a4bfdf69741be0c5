"""
Fee Estimation Service for blockchain operations.
Derives gas limit, storage limit, burn fee and fee suggestions from the
consumption figures a node reports when it simulates an operation.

Fee constants follow the baker defaults of the network's minimal fee filter:
- minimal_fees = 100 mutez
- minimal_nanotez_per_byte = 1000 (1 mutez per byte)
- minimal_nanotez_per_gas_unit = 100 (0.1 mutez per gas unit)

The default storage rate is the protocol's cost_per_byte (250 mutez) rather
than 1 mutez, so burn fees match what the network actually charges.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from dotenv import load_dotenv

load_dotenv()

# Configure logging
logger = logging.getLogger(__name__)
log_level = os.getenv("LOG_LEVEL", "WARNING")
logger.setLevel(getattr(logging, log_level.upper()))
if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level.upper()))
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

Number = Union[int, float]


# =============================================================================
# Fee Constants
# =============================================================================

# Flat fee every operation pays
MINIMAL_FEE_MUTEZ = 100

# Fee per byte of the serialized operation
MINIMAL_FEE_PER_BYTE_MUTEZ = 1

# Fee per unit of gas
MINIMAL_FEE_PER_GAS_MUTEZ = 0.1

# Safety margin added to the simulated gas consumption
GAS_BUFFER = 100

# Protocol cost_per_byte for storage (1 byte = 250 mutez burned)
DEFAULT_FEE_PER_STORAGE_BYTE_MUTEZ = 250

MILLIGAS_PER_GAS = 1000


def round_up(value: Number) -> Number:
    """Round toward positive infinity. Non-finite values pass through."""
    if isinstance(value, float) and not math.isfinite(value):
        return value
    return math.ceil(value)


def to_float(value: Number) -> float:
    """Convert to float. Integers beyond the float range become +/-inf."""
    try:
        return float(value)
    except OverflowError:
        return math.inf if value > 0 else -math.inf


def is_finite_number(value: Number) -> bool:
    """True for finite values that fit in a float."""
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def to_number(value: Any) -> Number:
    """
    Coerce a raw simulation property to a number.

    Numeric strings are parsed, None and blank strings become 0 and anything
    unparseable becomes NaN.
    """
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


# =============================================================================
# Fee Policy
# =============================================================================

@dataclass(frozen=True)
class FeePolicy:
    """Baker fee policy used by the fee formulas."""
    minimal_fee_mutez: Number = MINIMAL_FEE_MUTEZ
    minimal_fee_per_byte_mutez: Number = MINIMAL_FEE_PER_BYTE_MUTEZ
    minimal_fee_per_gas_mutez: Number = MINIMAL_FEE_PER_GAS_MUTEZ
    gas_buffer: Number = GAS_BUFFER
    fee_per_storage_byte_mutez: Number = DEFAULT_FEE_PER_STORAGE_BYTE_MUTEZ

    def to_dict(self) -> Dict[str, Number]:
        return {
            "minimal_fee_mutez": self.minimal_fee_mutez,
            "minimal_fee_per_byte_mutez": self.minimal_fee_per_byte_mutez,
            "minimal_fee_per_gas_mutez": self.minimal_fee_per_gas_mutez,
            "gas_buffer": self.gas_buffer,
            "fee_per_storage_byte_mutez": self.fee_per_storage_byte_mutez,
        }


DEFAULT_FEE_POLICY = FeePolicy()


def _env_number(name: str, default: Number) -> Number:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e
    if not math.isfinite(value) or value < 0:
        raise RuntimeError(f"{name} must be a finite non-negative number, got {raw!r}")
    return int(value) if value.is_integer() else value


def fee_policy_from_env() -> FeePolicy:
    """
    Build a fee policy from environment variables.

    Unset variables fall back to the protocol defaults.

    Raises:
        RuntimeError: if a variable is set but is not a non-negative number
    """
    return FeePolicy(
        minimal_fee_mutez=_env_number("MINIMAL_FEE_MUTEZ", MINIMAL_FEE_MUTEZ),
        minimal_fee_per_byte_mutez=_env_number("MINIMAL_FEE_PER_BYTE_MUTEZ", MINIMAL_FEE_PER_BYTE_MUTEZ),
        minimal_fee_per_gas_mutez=_env_number("MINIMAL_FEE_PER_GAS_MUTEZ", MINIMAL_FEE_PER_GAS_MUTEZ),
        gas_buffer=_env_number("GAS_BUFFER", GAS_BUFFER),
        fee_per_storage_byte_mutez=_env_number("FEE_PER_STORAGE_BYTE_MUTEZ", DEFAULT_FEE_PER_STORAGE_BYTE_MUTEZ),
    )


# Process-wide policy, built on first use
_policy: Optional[FeePolicy] = None


def get_fee_policy() -> FeePolicy:
    """Get or create the process-wide fee policy."""
    global _policy
    if _policy is None:
        _policy = fee_policy_from_env()
        logger.debug(f"Fee policy loaded: {_policy}")
    return _policy


def reset_fee_policy() -> None:
    """Drop the cached policy so the next call re-reads the environment."""
    global _policy
    _policy = None


# =============================================================================
# Fee Estimate
# =============================================================================

@dataclass(frozen=True)
class FeeEstimate:
    """
    Fee and limit estimate for a single operation.

    Raw fields come from a simulation run; every figure is derived from them
    on each call. Create a new instance when the inputs change.
    """
    milligas_limit: Number
    storage_limit_raw: Number
    op_size: Number
    base_fee_mutez: Optional[Number] = None
    fee_per_storage_byte_mutez: Optional[Number] = None
    policy: FeePolicy = field(default_factory=get_fee_policy)

    @property
    def MINIMAL_FEE_MUTEZ(self) -> Number:
        return self.policy.minimal_fee_mutez

    @property
    def MINIMAL_FEE_PER_BYTE_MUTEZ(self) -> Number:
        return self.policy.minimal_fee_per_byte_mutez

    @property
    def MINIMAL_FEE_PER_GAS_MUTEZ(self) -> Number:
        return self.policy.minimal_fee_per_gas_mutez

    @property
    def GAS_BUFFER(self) -> Number:
        return self.policy.gas_buffer

    @property
    def storage_rate_mutez(self) -> Number:
        """Effective per-byte storage cost, falling back to the policy rate."""
        if self.fee_per_storage_byte_mutez is None:
            return self.policy.fee_per_storage_byte_mutez
        return self.fee_per_storage_byte_mutez

    @classmethod
    def from_properties(cls, props: Mapping[str, Any], policy: Optional[FeePolicy] = None) -> "FeeEstimate":
        """
        Build an estimate from simulation result properties.

        Args:
            props: Mapping with milligasLimit, storageLimit, opSize and optionally
                minimalFeePerStorageByteMutez and baseFeeMutez
            policy: Fee policy (default: process-wide policy)

        Returns:
            FeeEstimate for the operation
        """
        base_fee = props.get("baseFeeMutez")
        storage_rate = props.get("minimalFeePerStorageByteMutez")
        return cls(
            milligas_limit=to_number(props.get("milligasLimit", math.nan)),
            storage_limit_raw=to_number(props.get("storageLimit", math.nan)),
            op_size=to_number(props.get("opSize", math.nan)),
            base_fee_mutez=None if base_fee is None else to_number(base_fee),
            fee_per_storage_byte_mutez=None if storage_rate is None else to_number(storage_rate),
            policy=policy or get_fee_policy(),
        )

    @classmethod
    def from_properties_list(
        cls, props_list: Iterable[Mapping[str, Any]], policy: Optional[FeePolicy] = None
    ) -> List["FeeEstimate"]:
        """Build one estimate per operation of a batch, in order."""
        return [cls.from_properties(props, policy) for props in props_list]

    def storage_limit(self) -> Number:
        """Storage limit to declare. Freed storage never yields a negative limit."""
        limit = max(self.storage_limit_raw, 0)
        return limit if limit > 0 else 0

    def burn_fee_mutez(self) -> Number:
        """Mutez burned for the storage the operation allocates."""
        return round_up(to_float(self.storage_limit()) * self.storage_rate_mutez)

    def gas_limit(self) -> Number:
        """Gas limit to declare: consumed gas plus the safety buffer."""
        return round_up(to_float(self.milligas_limit) / MILLIGAS_PER_GAS + self.GAS_BUFFER)

    def consumed_milligas(self) -> Number:
        """Simulated consumption in milligas, without buffer."""
        return self.milligas_limit

    def operation_fee_mutez(self) -> float:
        # Unrounded; composite fees apply round_up once
        return (
            (to_float(self.milligas_limit) / MILLIGAS_PER_GAS + self.GAS_BUFFER) * self.MINIMAL_FEE_PER_GAS_MUTEZ
            + to_float(self.op_size) * self.MINIMAL_FEE_PER_BYTE_MUTEZ
        )

    def minimal_fee_mutez(self) -> Number:
        """Minimal fee a baker with default settings accepts."""
        return round_up(self.MINIMAL_FEE_MUTEZ + self.operation_fee_mutez())

    def suggested_fee_mutez(self) -> Number:
        """Minimal fee plus one extra flat fee as margin."""
        return round_up(self.operation_fee_mutez() + self.MINIMAL_FEE_MUTEZ * 2)

    def using_base_fee_mutez(self) -> Number:
        """Fee built on the caller's base fee, never below the flat minimum."""
        base_fee = math.nan if self.base_fee_mutez is None else self.base_fee_mutez
        floor = max(base_fee, self.MINIMAL_FEE_MUTEZ)
        fee = round_up(self.operation_fee_mutez())
        if isinstance(fee, float):
            floor = to_float(floor)
        return floor + fee

    def total_cost(self) -> Number:
        """Minimal fee plus burn fee."""
        return self.minimal_fee_mutez() + self.burn_fee_mutez()

    def is_finite(self) -> bool:
        """True when every declared figure is a finite number."""
        values = [
            self.gas_limit(),
            self.storage_limit(),
            self.minimal_fee_mutez(),
            self.suggested_fee_mutez(),
            self.burn_fee_mutez(),
            self.total_cost(),
        ]
        if self.base_fee_mutez is not None:
            values.append(self.using_base_fee_mutez())
        return all(is_finite_number(v) for v in values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "milligas_limit": self.milligas_limit,
            "storage_limit_raw": self.storage_limit_raw,
            "op_size": self.op_size,
            "base_fee_mutez": self.base_fee_mutez,
            "fee_per_storage_byte_mutez": self.storage_rate_mutez,
            "gas_limit": self.gas_limit(),
            "consumed_milligas": self.consumed_milligas(),
            "storage_limit": self.storage_limit(),
            "burn_fee_mutez": self.burn_fee_mutez(),
            "operation_fee_mutez": self.operation_fee_mutez(),
            "minimal_fee_mutez": self.minimal_fee_mutez(),
            "suggested_fee_mutez": self.suggested_fee_mutez(),
            "using_base_fee_mutez": None if self.base_fee_mutez is None else self.using_base_fee_mutez(),
            "total_cost": self.total_cost(),
        }


# =============================================================================
# Batch Estimate
# =============================================================================

@dataclass
class BatchFeeEstimate:
    """Estimates for the operations of a batch, with totals."""
    estimates: List[FeeEstimate] = field(default_factory=list)

    @property
    def total_gas_limit(self) -> Number:
        return sum(e.gas_limit() for e in self.estimates)

    @property
    def total_storage_limit(self) -> Number:
        return sum(e.storage_limit() for e in self.estimates)

    @property
    def total_burn_fee_mutez(self) -> Number:
        return sum(e.burn_fee_mutez() for e in self.estimates)

    @property
    def total_minimal_fee_mutez(self) -> Number:
        return sum(e.minimal_fee_mutez() for e in self.estimates)

    @property
    def total_suggested_fee_mutez(self) -> Number:
        return sum(e.suggested_fee_mutez() for e in self.estimates)

    @property
    def total_cost(self) -> Number:
        return sum(e.total_cost() for e in self.estimates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operations": [e.to_dict() for e in self.estimates],
            "total_gas_limit": self.total_gas_limit,
            "total_storage_limit": self.total_storage_limit,
            "total_burn_fee_mutez": self.total_burn_fee_mutez,
            "total_minimal_fee_mutez": self.total_minimal_fee_mutez,
            "total_suggested_fee_mutez": self.total_suggested_fee_mutez,
            "total_cost": self.total_cost,
        }


# =============================================================================
# Reports
# =============================================================================

def format_report(estimate: FeeEstimate, label: Optional[str] = None) -> str:
    """Format a human-readable fee estimation report."""
    header = "## Fee Estimation" + (f" for `{label}`" if label else "")

    report = [
        header,
        "",
        "### Summary",
        f"- **Gas Limit:** {estimate.gas_limit():,}",
        f"- **Consumed Milligas:** {estimate.consumed_milligas():,}",
        f"- **Storage Limit:** {estimate.storage_limit():,} bytes",
        f"- **Operation Size:** {estimate.op_size:,} bytes",
        f"- **Total Cost:** {estimate.total_cost():,} mutez",
        "",
        "### Fees",
        "",
        "| Fee | Mutez |",
        "|-----|-------|",
        f"| Minimal Fee | {estimate.minimal_fee_mutez():,} |",
        f"| Suggested Fee | {estimate.suggested_fee_mutez():,} |",
    ]
    if estimate.base_fee_mutez is not None:
        report.append(f"| Using Base Fee ({estimate.base_fee_mutez:,}) | {estimate.using_base_fee_mutez():,} |")
    report.append(f"| Burn Fee | {estimate.burn_fee_mutez():,} |")

    report.extend([
        "",
        "---",
        f"*Gas limit includes a buffer of {estimate.GAS_BUFFER} gas units. "
        f"Storage is charged at {estimate.storage_rate_mutez} mutez per byte.*",
    ])

    return "\n".join(report)


# =============================================================================
# Public API
# =============================================================================

def estimate_fees(
    milligas_limit: Number,
    storage_limit: Number,
    op_size: Number,
    base_fee_mutez: Optional[Number] = None,
    fee_per_storage_byte_mutez: Optional[Number] = None,
    policy: Optional[FeePolicy] = None,
) -> Dict:
    """
    Estimate fees for a simulated operation.

    Args:
        milligas_limit: Simulated gas consumption in milligas
        storage_limit: Simulated storage delta in bytes (negative when freed)
        op_size: Serialized operation size in bytes
        base_fee_mutez: Optional fee floor chosen by the caller
        fee_per_storage_byte_mutez: Storage rate (default: policy rate)
        policy: Fee policy (default: process-wide policy)

    Returns:
        Dictionary with fee estimation details
    """
    estimate = FeeEstimate(
        milligas_limit=milligas_limit,
        storage_limit_raw=storage_limit,
        op_size=op_size,
        base_fee_mutez=base_fee_mutez,
        fee_per_storage_byte_mutez=fee_per_storage_byte_mutez,
        policy=policy or get_fee_policy(),
    )
    if not estimate.is_finite():
        logger.warning(f"Non-finite fee estimate for inputs {estimate}")
    logger.debug(
        f"Estimated gas_limit={estimate.gas_limit()} minimal_fee={estimate.minimal_fee_mutez()} "
        f"total_cost={estimate.total_cost()}"
    )
    result = estimate.to_dict()
    result["report"] = format_report(estimate)
    return result


def estimate_batch(operations: Iterable[Mapping[str, Any]], policy: Optional[FeePolicy] = None) -> Dict:
    """
    Estimate fees for every operation of a batch.

    Args:
        operations: Simulation result properties, one mapping per operation
        policy: Fee policy (default: process-wide policy)

    Returns:
        Dictionary with per-operation details and batch totals
    """
    batch = BatchFeeEstimate(FeeEstimate.from_properties_list(operations, policy))
    for index, estimate in enumerate(batch.estimates):
        if not estimate.is_finite():
            logger.warning(f"Non-finite fee estimate for operation {index}: {estimate}")
    logger.debug(f"Estimated batch of {len(batch.estimates)} operation(s), total_cost={batch.total_cost}")
    return batch.to_dict()
