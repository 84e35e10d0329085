"""
Pool Metrics Derivation Engine.

Turns raw pool descriptors returned by the Configuration Manager REST
API into normalized PoolMetrics values. Each record runs through the
same synchronous pipeline, in response order:

1. Decode     - raw JSON object -> strictly typed PoolRecord
2. Normalize  - resolve the effective free capacity (physical, else virtual)
3. Classify   - assign one of the five PoolVariant values
4. Calculate  - apply the variant's formula set, round half-up

No state is shared between records.
"""

import logging
import math
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional

from pydantic import ValidationError

from config import HitachiConfig
from data_models import PoolMetrics, PoolRecord, PoolVariant, RATIO_NOT_SUPPORTED

logger = logging.getLogger(__name__)

MIB_PER_GIB = 1024.0

# Rounded used + free may differ from rounded total by one unit in the last place
CONSISTENCY_TOLERANCE_GB = 0.01

POOL_TYPE_VARIANTS = {
    'RT': PoolVariant.TIERED,
    'HDT': PoolVariant.TIERED,
    'HDP': PoolVariant.THIN_PROVISIONED,
    'HTI': PoolVariant.THIN_IMAGE,
}


class PoolMetricsError(Exception):
    """Base exception for pool metrics derivation errors."""
    pass


class SchemaViolation(PoolMetricsError):
    """Raised when a response is not the expected single-keyed data wrapper."""
    pass


class PoolRecordError(PoolMetricsError):
    """Base exception for errors tied to a single pool record."""

    def __init__(self, pool_id: Any, pool_name: Any, message: str):
        self.pool_id = pool_id
        self.pool_name = pool_name
        super().__init__(f"Pool {pool_id} ({pool_name}): {message}")


class MissingOrMistypedField(PoolRecordError):
    """Raised when a field required by the pool's variant is absent or mistyped."""

    def __init__(self, pool_id: Any, pool_name: Any, field: str, reason: str = "missing"):
        self.field = field
        self.reason = reason
        super().__init__(pool_id, pool_name, f"field '{field}' is {reason}")


class UnclassifiablePoolType(PoolRecordError):
    """Raised when a pool has no FMC counters and an unknown pool type."""

    def __init__(self, pool_id: Any, pool_name: Any, pool_type: str):
        self.pool_type = pool_type
        super().__init__(
            pool_id, pool_name,
            f"pool type '{pool_type}' cannot be classified "
            f"(known types: {', '.join(POOL_TYPE_VARIANTS)})"
        )


class DivisionByZero(PoolRecordError):
    """Raised when a compression ratio denominator is zero."""

    def __init__(self, pool_id: Any, pool_name: Any, field: str):
        self.field = field
        super().__init__(
            pool_id, pool_name,
            f"compression ratio is undefined because '{field}' is 0"
        )


def round_half_up(value: float, places: int = 2) -> float:
    """
    Round at the given number of decimal places, rounding up from .5.

    The value is scaled by 10**places; a fractional part of 0.5 or more
    takes the ceiling, anything less the floor. The scaling happens on
    the binary float, so round_half_up(1.005, 2) == 1.0 because
    1.005 * 100 is 100.49999999999999.

    Raises:
        ValueError: If value is NaN or infinite
    """
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"Cannot round non-finite value: {value}")
    scale = 10 ** places
    digits = value * scale
    fraction, _ = math.modf(digits)
    if fraction >= 0.5:
        return math.ceil(digits) / scale
    return math.floor(digits) / scale


def unwrap_data(payload: Any, data_element: str = 'data') -> List[Dict[str, Any]]:
    """
    Return the element list of a Configuration Manager collection response.

    Every collection response has exactly one top-level key holding
    an array of objects, e.g. {"data": [{...}, {...}]}.

    Raises:
        SchemaViolation: If the payload has any other shape
    """
    if not isinstance(payload, dict):
        raise SchemaViolation(
            f"JSON parsing error (response is a {type(payload).__name__}, "
            f"expected an object)"
        )
    if len(payload) != 1 or data_element not in payload:
        raise SchemaViolation(
            f"JSON parsing error (Return Format is not correct): expected the "
            f"single key '{data_element}', got {sorted(payload)}"
        )

    elements = payload[data_element]
    if not isinstance(elements, list):
        raise SchemaViolation(f"'{data_element}' is not an array")

    for index, element in enumerate(elements):
        if not isinstance(element, dict):
            raise SchemaViolation(f"'{data_element}' element {index} is not an object")

    return elements


def decode_pool_record(raw: Dict[str, Any]) -> PoolRecord:
    """
    Decode one raw pool object into a PoolRecord.

    Raises:
        MissingOrMistypedField: Naming the first offending field
    """
    try:
        return PoolRecord.model_validate(raw)
    except ValidationError as e:
        error = e.errors()[0]
        field = '.'.join(str(part) for part in error['loc']) or '<record>'
        if error['type'] == 'missing':
            reason = 'missing'
        else:
            reason = f"invalid ({error['msg']})"
        raise MissingOrMistypedField(
            raw.get('poolId', '?'), raw.get('poolName', '?'), field, reason
        ) from e


def _field_alias(attribute: str) -> str:
    return PoolRecord.model_fields[attribute].alias or attribute


def _require(record: PoolRecord, attribute: str) -> float:
    """Return an optional field the variant depends on, or raise."""
    value = getattr(record, attribute)
    if value is None:
        raise MissingOrMistypedField(record.pool_id, record.pool_name, _field_alias(attribute))
    return value


def _ratio(record: PoolRecord, numerator: float, denominator_attribute: str) -> float:
    denominator = _require(record, denominator_attribute)
    if denominator == 0:
        raise DivisionByZero(record.pool_id, record.pool_name, _field_alias(denominator_attribute))
    return numerator / denominator


def effective_free(record: PoolRecord) -> float:
    """
    Effective free capacity of a pool in MiB.

    Pools without the physical capacity feature never report
    availablePhysicalVolumeCapacity; they fall back to the virtual
    availableVolumeCapacity.
    """
    if record.available_physical_volume_capacity is not None:
        return record.available_physical_volume_capacity
    return record.available_volume_capacity


def classify_pool(record: PoolRecord) -> PoolVariant:
    """
    Assign a pool record to exactly one PoolVariant.

    FMC counters take precedence over the pool type. An FMC pool whose
    physical capacity is entirely FMC pool volumes is all-flash.

    Raises:
        MissingOrMistypedField: If an FMC pool lacks the capacities compared
        UnclassifiablePoolType: If a non-FMC pool has an unknown pool type
    """
    if record.has_fmc:
        total_physical = _require(record, 'total_physical_capacity')
        fmc_physical = _require(record, 'available_physical_fmc_pool_volumes_capacity')
        if total_physical == fmc_physical:
            return PoolVariant.ALL_FLASH_COMPRESSED
        return PoolVariant.MIXED_COMPRESSED

    variant = POOL_TYPE_VARIANTS.get(record.pool_type)
    if variant is None:
        raise UnclassifiablePoolType(record.pool_id, record.pool_name, record.pool_type)
    return variant


class CapacityFigures(NamedTuple):
    """Unrounded per-variant results; ratios are None when not supported."""
    total_gb: float
    used_gb: float
    free_gb: float
    fmc_ratio: Optional[float]
    total_ratio: Optional[float]
    effective_free_gb: float


def _compressed_figures(record: PoolRecord, free_mib: float, precision: int) -> CapacityFigures:
    used_virtual_mib = record.total_pool_capacity - free_mib
    if used_virtual_mib < 0:
        free_attribute = (
            'available_physical_volume_capacity'
            if record.available_physical_volume_capacity is not None
            else 'available_volume_capacity'
        )
        raise MissingOrMistypedField(
            record.pool_id, record.pool_name, _field_alias(free_attribute),
            f"inconsistent (greater than '{_field_alias('total_pool_capacity')}')"
        )
    total_ratio = _ratio(record, used_virtual_mib, 'used_physical_capacity')
    fmc_ratio = _ratio(
        record,
        _require(record, 'used_fmc_pool_volumes_capacity'),
        'used_physical_fmc_pool_volumes_capacity',
    )
    free_gb = free_mib / MIB_PER_GIB
    return CapacityFigures(
        total_gb=_require(record, 'total_physical_capacity') / MIB_PER_GIB,
        used_gb=_require(record, 'used_physical_capacity') / MIB_PER_GIB,
        free_gb=free_gb,
        fmc_ratio=fmc_ratio,
        total_ratio=total_ratio,
        # effective free capacity scales by the ratio as reported, i.e. rounded
        effective_free_gb=free_gb * round_half_up(total_ratio, precision),
    )


def _tiered_figures(record: PoolRecord, free_mib: float, precision: int) -> CapacityFigures:
    free_gb = free_mib / MIB_PER_GIB
    return CapacityFigures(
        total_gb=record.total_pool_capacity / MIB_PER_GIB,
        used_gb=(record.total_pool_capacity - free_mib) / MIB_PER_GIB,
        free_gb=free_gb,
        fmc_ratio=None,
        total_ratio=None,
        effective_free_gb=free_gb,
    )


def _thin_figures(record: PoolRecord, free_mib: float, precision: int) -> CapacityFigures:
    total_gb = record.total_pool_capacity / MIB_PER_GIB
    free_gb = free_mib / MIB_PER_GIB
    return CapacityFigures(
        total_gb=total_gb,
        used_gb=total_gb - free_gb,
        free_gb=free_gb,
        fmc_ratio=None,
        total_ratio=None,
        effective_free_gb=free_gb,
    )


FormulaSet = Callable[[PoolRecord, float, int], CapacityFigures]

# All-flash and mixed FMC pools share one formula set.
FORMULAS: Dict[PoolVariant, FormulaSet] = {
    PoolVariant.ALL_FLASH_COMPRESSED: _compressed_figures,
    PoolVariant.MIXED_COMPRESSED: _compressed_figures,
    PoolVariant.TIERED: _tiered_figures,
    PoolVariant.THIN_PROVISIONED: _thin_figures,
    PoolVariant.THIN_IMAGE: _thin_figures,
}


def _rounded_ratio(value: Optional[float], precision: int) -> float:
    if value is None:
        return RATIO_NOT_SUPPORTED
    return round_half_up(value, precision)


def calculate_metrics(
    record: PoolRecord,
    variant: PoolVariant,
    effective_free_mib: float,
    precision: int = 2
) -> PoolMetrics:
    """
    Apply the formula set of a variant to a pool record.

    Args:
        record: Decoded pool record
        variant: Result of classify_pool() for the record
        effective_free_mib: Result of effective_free() for the record
        precision: Decimal places every value is rounded to

    Returns:
        PoolMetrics with all values rounded half-up

    Raises:
        MissingOrMistypedField: If a field the variant needs is absent
        DivisionByZero: If a compression ratio denominator is zero
    """
    figures = FORMULAS[variant](record, effective_free_mib, precision)

    metrics = PoolMetrics(
        pool_id=record.pool_id,
        pool_name=record.pool_name,
        variant=variant,
        total_physical_capacity_gb=round_half_up(figures.total_gb, precision),
        used_physical_capacity_gb=round_half_up(figures.used_gb, precision),
        free_physical_capacity_gb=round_half_up(figures.free_gb, precision),
        fmc_compression_ratio=_rounded_ratio(figures.fmc_ratio, precision),
        total_compression_ratio=_rounded_ratio(figures.total_ratio, precision),
        effective_free_gb=round_half_up(figures.effective_free_gb, precision),
    )

    _check_consistency(metrics)
    return metrics


def _check_consistency(metrics: PoolMetrics) -> None:
    # Compressed pools report used and free physical capacity as separate counters
    drift = abs(
        metrics.used_physical_capacity_gb
        + metrics.free_physical_capacity_gb
        - metrics.total_physical_capacity_gb
    )
    if drift > CONSISTENCY_TOLERANCE_GB + 1e-9:
        logger.debug(
            f"Pool {metrics.pool_id} ({metrics.pool_name}): used + free differs "
            f"from total by {drift:.2f} GB ({metrics.variant.value})"
        )


def derive_metrics(record: PoolRecord, precision: int = 2) -> PoolMetrics:
    """Run normalize, classify and calculate for one decoded record."""
    free_mib = effective_free(record)
    variant = classify_pool(record)
    logger.debug(f"Pool {record.pool_id} ({record.pool_name}) classified as {variant.value}")
    return calculate_metrics(record, variant, free_mib, precision)


def derive_pool_metrics(
    raw_records: Iterable[Dict[str, Any]],
    config: HitachiConfig
) -> Iterator[PoolMetrics]:
    """
    Derive PoolMetrics for raw pool objects, preserving their order.

    Unclassifiable pool types are skipped with a warning unless the
    config asks for an error. Missing or mistyped fields abort the run
    unless the config asks to skip the pool. DivisionByZero and any
    other error always propagate.
    """
    for raw in raw_records:
        try:
            record = decode_pool_record(raw)
            metrics = derive_metrics(record, config.round_precision)
        except UnclassifiablePoolType as e:
            if config.unclassified_pool_policy == 'error':
                raise
            logger.warning(f"Skipping pool: {e}")
            continue
        except MissingOrMistypedField as e:
            if config.missing_field_policy == 'abort':
                raise
            logger.warning(f"Skipping pool: {e}")
            continue

        yield metrics


def derive_pool_report(payload: Any, config: HitachiConfig) -> List[PoolMetrics]:
    """
    Derive metrics for every pool of a pools response page.

    Raises:
        SchemaViolation: If the response is not the expected wrapper
        PoolRecordError: As described for derive_pool_metrics()
    """
    raw_records = unwrap_data(payload, config.data_element)
    logger.info(f"Deriving metrics for {len(raw_records)} pool(s)")
    return list(derive_pool_metrics(raw_records, config))
