"""
FastAPI Web Server for the Hitachi Pool Capacity Report

This module exposes the pool capacity and LUN reservation reports as
a small REST API. Every request runs a fresh collection against the
storage array; nothing is kept between requests.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import HitachiConfig, load_config, load_config_from_env
from data_models import LunReservation, PoolMetrics
from hitachi_client import HitachiClientError, HitachiSessionClient
from pool_metrics import PoolMetricsError, derive_pool_report
from row_builder import build_pool_rows, iter_blocks

logger = logging.getLogger(__name__)

ClientFactory = Callable[[HitachiConfig], HitachiSessionClient]


# Pydantic models for API responses
class PoolMetricsResponse(BaseModel):
    pool_id: int
    pool_name: str
    variant: str
    total_physical_capacity_gb: float
    used_physical_capacity_gb: float
    free_physical_capacity_gb: float
    fmc_compression_ratio: float
    total_compression_ratio: float
    effective_free_gb: float
    rows: List[List[str]]


class PoolReportResponse(BaseModel):
    storage_device_id: Optional[str]
    collection_timestamp: str
    pools: List[PoolMetricsResponse]


class LunReservationResponse(BaseModel):
    port_id: str
    host_group_name: str
    host_group_number: int
    lun: int
    ldev: str
    reserved: bool
    reservations: str


class LunReportResponse(BaseModel):
    storage_device_id: Optional[str]
    collection_timestamp: str
    luns: List[LunReservationResponse]


def pool_to_response(metrics: PoolMetrics, config: HitachiConfig) -> PoolMetricsResponse:
    block = next(iter_blocks(build_pool_rows(metrics, config), config))
    return PoolMetricsResponse(
        pool_id=metrics.pool_id,
        pool_name=metrics.pool_name,
        variant=metrics.variant.value,
        total_physical_capacity_gb=metrics.total_physical_capacity_gb,
        used_physical_capacity_gb=metrics.used_physical_capacity_gb,
        free_physical_capacity_gb=metrics.free_physical_capacity_gb,
        fmc_compression_ratio=metrics.fmc_compression_ratio,
        total_compression_ratio=metrics.total_compression_ratio,
        effective_free_gb=metrics.effective_free_gb,
        rows=[[label, value] for label, value in block],
    )


def lun_to_response(reservation: LunReservation) -> LunReservationResponse:
    return LunReservationResponse(
        port_id=reservation.port_id,
        host_group_name=reservation.host_group_name,
        host_group_number=reservation.host_group_number,
        lun=reservation.lun,
        ldev=reservation.ldev_hex,
        reserved=reservation.is_reserved,
        reservations=reservation.reservation_text,
    )


def create_app(
    config: HitachiConfig,
    client_factory: ClientFactory = HitachiSessionClient
) -> FastAPI:
    """
    Build the API application for one storage configuration.

    Args:
        config: Connection and report settings used by every request
        client_factory: Creates the session client for each request
    """
    app = FastAPI(
        title="Hitachi Pool Capacity API",
        description="REST API for Hitachi storage pool capacity and LUN reservations",
        version="2.0.0"
    )

    # Configure CORS for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def _upstream_error(e: Exception) -> HTTPException:
        logger.error(f"Collection failed: {e}")
        if isinstance(e, PoolMetricsError):
            return HTTPException(status_code=422, detail=str(e))
        # array unreachable, credentials rejected or API errors
        return HTTPException(status_code=502, detail=str(e))

    @app.get("/api/health")
    def health_check():
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "host": config.host,
        }

    @app.get("/api/pools", response_model=PoolReportResponse)
    def get_pools():
        """Collect pool data and return the derived metrics."""
        timestamp = datetime.now().astimezone().isoformat(timespec='seconds')
        try:
            with client_factory(config) as client:
                client.check_api_version()
                client.select_storage_device_id()
                client.open_session()
                payload = client.get_pools()
                storage_device_id = client.storage_device_id
            pools = derive_pool_report(payload, config)
        except (HitachiClientError, PoolMetricsError) as e:
            raise _upstream_error(e) from e

        return PoolReportResponse(
            storage_device_id=storage_device_id,
            collection_timestamp=timestamp,
            pools=[pool_to_response(m, config) for m in pools],
        )

    @app.get("/api/luns", response_model=LunReportResponse)
    def get_luns(reserved_only: bool = False):
        """Collect all LUNs with their host reserve flags."""
        timestamp = datetime.now().astimezone().isoformat(timespec='seconds')
        try:
            with client_factory(config) as client:
                client.select_storage_device_id()
                client.open_session()
                reservations = list(client.get_lun_reservations())
                storage_device_id = client.storage_device_id
        except (HitachiClientError, PoolMetricsError) as e:
            raise _upstream_error(e) from e

        if reserved_only:
            reservations = [r for r in reservations if r.is_reserved]

        return LunReportResponse(
            storage_device_id=storage_device_id,
            collection_timestamp=timestamp,
            luns=[lun_to_response(r) for r in reservations],
        )

    return app


if __name__ == "__main__":
    import uvicorn
    from pathlib import Path

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if Path("config.json").exists():
        server_config = load_config("config.json")
    else:
        server_config = load_config_from_env()

    logger.info("Starting Hitachi Pool Capacity API Server...")
    logger.info("API documentation at: http://localhost:8000/docs")

    uvicorn.run(
        create_app(server_config),
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
