"""
Shared fixtures for the pool capacity report tests.
"""
import json
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import HitachiConfig


@pytest.fixture
def config():
    return HitachiConfig(username='restuser', password='restpass', host='10.0.1.1')


@pytest.fixture
def fmc_pool():
    """All-flash FMC pool: totalPhysicalCapacity equals the FMC pool volume capacity."""
    return {
        "poolId": 20,
        "poolName": "FMC_HDP",
        "poolType": "HDP",
        "poolStatus": "POLN",
        "usedCapacityRate": 12,
        "usedPhysicalCapacityRate": 6,
        "totalPoolCapacity": 10062024,
        "availableVolumeCapacity": 8838690,
        "availablePhysicalVolumeCapacity": 8838690,
        "usedPhysicalCapacity": 316512,
        "totalPhysicalCapacity": 4910262,
        "availablePhysicalFMCPoolVolumesCapacity": 4910262,
        "usedFMCPoolVolumesCapacity": 1223334,
        "usedPhysicalFMCPoolVolumesCapacity": 316498,
        "availableFMCPoolVolumesCapacity": 10062024,
    }


@pytest.fixture
def tiered_pool():
    return {
        "poolId": 22,
        "poolName": "HDT_Pool",
        "poolType": "RT",
        "totalPoolCapacity": 10000000,
        "availableVolumeCapacity": 4000000,
    }


@pytest.fixture
def hdp_pool():
    return {
        "poolId": 0,
        "poolName": "FMD_Pool",
        "poolType": "HDP",
        "totalPoolCapacity": 11739672,
        "availableVolumeCapacity": 2808204,
    }


@pytest.fixture
def hti_pool():
    return {
        "poolId": 3,
        "poolName": "Snap_Pool",
        "poolType": "HTI",
        "totalPoolCapacity": 1024000,
        "availableVolumeCapacity": 512000,
    }


def make_response(status=200, payload=None, text=None):
    """Build a stand-in for requests.Response."""
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    if payload is not None:
        body = json.dumps(payload)
        response.content = body.encode()
        response.text = body
        response.json.return_value = payload
    else:
        response.content = (text or '').encode()
        response.text = text or ''
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response
