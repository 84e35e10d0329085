"""
Data models for Hitachi pool capacity and LUN reservation reports.

Raw records returned by the Configuration Manager REST API are decoded
into strict pydantic models at the system boundary:
- PoolRecord (one per element of the pools response)
- StorageSystem, HostGroup, LunRecord
- ApiVersionInfo, SessionToken

Derived values are plain frozen dataclasses:
- PoolMetrics (one per PoolRecord)
- LunReservation (one per LUN)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base for all decoded API objects: camelCase aliases, strict types."""

    model_config = ConfigDict(
        populate_by_name=True,
        strict=True,
        extra='ignore',
        frozen=True,
    )


class PoolRecord(ApiModel):
    """
    Raw pool descriptor.

    All capacities are in MiB. The physical and FMC fields are only
    populated by arrays whose firmware supports hardware compression.
    """
    pool_id: int = Field(alias='poolId')
    pool_name: str = Field(alias='poolName')
    pool_type: str = Field(alias='poolType')
    total_pool_capacity: float = Field(alias='totalPoolCapacity', ge=0)
    available_volume_capacity: float = Field(alias='availableVolumeCapacity', ge=0)

    used_physical_capacity_rate: Optional[float] = Field(
        default=None, alias='usedPhysicalCapacityRate'
    )
    total_physical_capacity: Optional[float] = Field(
        default=None, alias='totalPhysicalCapacity', ge=0
    )
    used_physical_capacity: Optional[float] = Field(
        default=None, alias='usedPhysicalCapacity', ge=0
    )
    available_physical_volume_capacity: Optional[float] = Field(
        default=None, alias='availablePhysicalVolumeCapacity', ge=0
    )
    used_fmc_pool_volumes_capacity: Optional[float] = Field(
        default=None, alias='usedFMCPoolVolumesCapacity', ge=0
    )
    used_physical_fmc_pool_volumes_capacity: Optional[float] = Field(
        default=None, alias='usedPhysicalFMCPoolVolumesCapacity', ge=0
    )
    available_physical_fmc_pool_volumes_capacity: Optional[float] = Field(
        default=None, alias='availablePhysicalFMCPoolVolumesCapacity', ge=0
    )

    @property
    def has_fmc(self) -> bool:
        """True when the pool reports Flash Module Compression counters."""
        return self.used_fmc_pool_volumes_capacity is not None


class StorageSystem(ApiModel):
    storage_device_id: str = Field(alias='storageDeviceId')
    model: str = Field(alias='model')
    serial_number: int = Field(alias='serialNumber')
    svp_ip: Optional[str] = Field(default=None, alias='svpIp')

    def describe(self) -> str:
        return (
            f"{self.model} (Serial:{self.serial_number} "
            f"StorageDeviceID:{self.storage_device_id} IP:{self.svp_ip or '-'})"
        )


class HostGroup(ApiModel):
    host_group_id: str = Field(alias='hostGroupId')
    port_id: str = Field(alias='portId')
    host_group_number: int = Field(alias='hostGroupNumber')
    host_group_name: str = Field(alias='hostGroupName')
    host_mode: Optional[str] = Field(default=None, alias='hostMode')


class LunRecord(ApiModel):
    lun_id: str = Field(alias='lunId')
    port_id: str = Field(alias='portId')
    host_group_number: int = Field(alias='hostGroupNumber')
    lun: int = Field(alias='lun')
    ldev_id: int = Field(alias='ldevId')
    lu_host_reserve: Dict[str, bool] = Field(default_factory=dict, alias='luHostReserve')


class ApiVersionInfo(ApiModel):
    api_version: str = Field(alias='apiVersion')
    product_name: Optional[str] = Field(default=None, alias='productName')


class SessionToken(ApiModel):
    token: str = Field(alias='token')
    session_id: int = Field(alias='sessionId')


class PoolVariant(str, Enum):
    """Pool technology variants, each with its own formula set."""
    ALL_FLASH_COMPRESSED = 'AllFlashCompressed'
    MIXED_COMPRESSED = 'MixedCompressed'
    TIERED = 'Tiered'
    THIN_PROVISIONED = 'ThinProvisioned'
    THIN_IMAGE = 'ThinImage'

    @property
    def is_compressed(self) -> bool:
        return self in (PoolVariant.ALL_FLASH_COMPRESSED, PoolVariant.MIXED_COMPRESSED)


# Ratio value reported when a pool variant has no compression counters
RATIO_NOT_SUPPORTED = -1.0


@dataclass(frozen=True)
class PoolMetrics:
    """
    Normalized capacity and data reduction metrics of one pool.

    Capacities are in GiB, every value is rounded to the configured
    precision. Ratios hold RATIO_NOT_SUPPORTED when the variant does
    not report compression counters.
    """
    pool_id: int
    pool_name: str
    variant: PoolVariant
    total_physical_capacity_gb: float
    used_physical_capacity_gb: float
    free_physical_capacity_gb: float
    fmc_compression_ratio: float
    total_compression_ratio: float
    effective_free_gb: float

    @property
    def supports_compression(self) -> bool:
        return self.variant.is_compressed


@dataclass(frozen=True)
class LunReservation:
    """A LUN mapped through a host group and its host reserve flags."""
    port_id: str
    host_group_name: str
    host_group_number: int
    lun: int
    ldev_id: int
    reserve_flags: Tuple[Tuple[str, bool], ...] = field(default_factory=tuple)

    @classmethod
    def from_records(cls, host_group: HostGroup, lun: LunRecord) -> 'LunReservation':
        return cls(
            port_id=host_group.port_id,
            host_group_name=host_group.host_group_name,
            host_group_number=host_group.host_group_number,
            lun=lun.lun,
            ldev_id=lun.ldev_id,
            reserve_flags=tuple(lun.lu_host_reserve.items()),
        )

    @property
    def ldev_hex(self) -> str:
        """LDEV id as colon separated hex, e.g. 13312 -> '34:00'."""
        digits = format(self.ldev_id, '04x')
        return f"{digits[:-2]}:{digits[-2:]}"

    @property
    def is_reserved(self) -> bool:
        return any(value for _, value in self.reserve_flags)

    @property
    def reservation_text(self) -> str:
        """Set reserve flags as '(key=true; key=true)', or 'none'."""
        active = [f"{key}=true" for key, value in self.reserve_flags if value]
        if not active:
            return 'none'
        return '(' + '; '.join(active) + ')'
