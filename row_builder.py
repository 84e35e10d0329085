"""
Row building and rendering for pool and LUN reports.

Each PoolMetrics (or LunReservation) value is serialized into an
ordered block of (label, value) string pairs wrapped by the start and
end markers of the config. Blocks of many pools are concatenated into
one flat row stream which a renderer either tabulates for the console
or flattens into comma separated lines.
"""

import csv
import logging
import sys
from datetime import datetime
from typing import Iterator, List, Optional, Sequence, TextIO, Tuple

from config import HitachiConfig
from data_models import LunReservation, PoolMetrics

logger = logging.getLogger(__name__)

Row = Tuple[str, str]

POOL_LABELS = (
    'Pool ID',
    'Pool name',
    'Total physical capacity [GB]',
    'Used physical capacity [GB]',
    'Free physical capacity [GB]',
    'Compression ratio FMC',
    'Compression ratio total',
    'Effective total GB free [GB]',
)

# CSV headers carry the value type for spreadsheet imports
CSV_POOL_LABELS = (
    'Pool ID(string)',
    'Pool name(string)',
    'Total physical capacity [GB](float64)',
    'Used physical capacity [GB](float64)',
    'Free physical capacity [GB](float64)',
    'Compression ratio FMC(float64)',
    'Compression ratio total(float64)',
    'Effective total GB free [GB](float64)',
)

LUN_LABELS = (
    'Port',
    'Host group',
    'LUN',
    'LDEV',
    'Reservations',
)

TIMESTAMP_LABEL = 'Time(RFC3339)'


def format_number(value: float, precision: int = 2) -> str:
    """Fixed-point string, e.g. -1.0 -> '-1.00'."""
    return f"{value:.{precision}f}"


def _wrap(config: HitachiConfig, rows: List[Row]) -> List[Row]:
    return [(config.element_start, '')] + rows + [(config.element_end, '')]


def build_pool_rows(
    metrics: PoolMetrics,
    config: HitachiConfig,
    labels: Sequence[str] = POOL_LABELS
) -> List[Row]:
    """
    Serialize one pool into a marker-delimited block of rows.

    Args:
        metrics: Derived metrics of the pool
        config: Supplies the markers and the decimal precision
        labels: Eight labels, in output order

    Returns:
        List of (label, value) pairs, first and last being the markers
    """
    precision = config.round_precision
    values = (
        str(metrics.pool_id),
        metrics.pool_name,
        format_number(metrics.total_physical_capacity_gb, precision),
        format_number(metrics.used_physical_capacity_gb, precision),
        format_number(metrics.free_physical_capacity_gb, precision),
        format_number(metrics.fmc_compression_ratio, precision),
        format_number(metrics.total_compression_ratio, precision),
        format_number(metrics.effective_free_gb, precision),
    )
    return _wrap(config, list(zip(labels, values)))


def build_csv_pool_rows(metrics: PoolMetrics, config: HitachiConfig) -> List[Row]:
    return build_pool_rows(metrics, config, CSV_POOL_LABELS)


def build_lun_rows(reservation: LunReservation, config: HitachiConfig) -> List[Row]:
    values = (
        reservation.port_id,
        f"{reservation.host_group_name}({reservation.host_group_number})",
        f"{reservation.lun:04d}",
        reservation.ldev_hex,
        reservation.reservation_text,
    )
    return _wrap(config, list(zip(LUN_LABELS, values)))


def iter_blocks(rows: Sequence[Row], config: HitachiConfig) -> Iterator[List[Row]]:
    """
    Split a flat row stream back into per-element blocks.

    Raises:
        ValueError: If markers are unbalanced
    """
    block: Optional[List[Row]] = None
    for row in rows:
        label = row[0]
        if label == config.element_start:
            if block is not None:
                raise ValueError("Element block started before the previous one ended")
            block = []
        elif label == config.element_end:
            if block is None:
                raise ValueError("Element block ended without being started")
            yield block
            block = None
        elif block is None:
            raise ValueError(f"Row outside of an element block: {label}")
        else:
            block.append(row)

    if block is not None:
        raise ValueError("Last element block is not terminated")


def render_table(
    rows: Sequence[Row],
    config: HitachiConfig,
    stream: Optional[TextIO] = None
) -> None:
    """Print one two-column boxed table per element block."""
    stream = stream or sys.stdout

    if not rows:
        logger.error("No data to output.")
        return

    for index, block in enumerate(iter_blocks(rows, config)):
        if not block:
            continue
        label_width = max(len(label) for label, _ in block)
        value_width = max(len(value) for _, value in block)
        separator = f"+-{'-' * label_width}-+-{'-' * value_width}-+"

        if index:
            print("", file=stream)
        print(separator, file=stream)
        for label, value in block:
            print(f"| {label:<{label_width}} | {value:>{value_width}} |", file=stream)
            print(separator, file=stream)


def render_csv(
    rows: Sequence[Row],
    config: HitachiConfig,
    stream: Optional[TextIO] = None,
    timestamp: Optional[str] = None
) -> None:
    """
    Print a header line and one value line per element block.

    The header is taken from the first block. Every line starts with
    the RFC 3339 capture timestamp.
    """
    stream = stream or sys.stdout

    if not rows:
        logger.error("No data to output.")
        return

    if timestamp is None:
        timestamp = datetime.now().astimezone().isoformat(timespec='seconds')

    writer = csv.writer(stream, delimiter=config.csv_separator, lineterminator='\n')
    header_written = False
    for block in iter_blocks(rows, config):
        if not header_written:
            writer.writerow([TIMESTAMP_LABEL] + [label for label, _ in block])
            header_written = True
        writer.writerow([timestamp] + [value for _, value in block])
