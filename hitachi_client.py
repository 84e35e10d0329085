"""
Hitachi Configuration Manager REST API session client.

This module implements the HitachiSessionClient class that talks to a
storage array SVP or to a Hitachi Command Suite (HCS) Configuration
Manager server:
- API version discovery and minimum version check
- Storage device selection and HCS storage registration
- Session token acquire/release
- Pool and host group / LUN retrieval

Every request is made once; any transport or API failure raises and
is fatal to the run.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

import requests
import urllib3
from pydantic import BaseModel, ValidationError

from config import HitachiConfig
from data_models import (
    ApiVersionInfo,
    HostGroup,
    LunRecord,
    LunReservation,
    SessionToken,
    StorageSystem,
)
from pool_metrics import unwrap_data

logger = logging.getLogger(__name__)

VERSION_PATH = '/ConfigurationManager/configuration/version'
STORAGES_PATH = '/ConfigurationManager/v1/objects/storages'

ModelT = TypeVar('ModelT', bound=BaseModel)


class HitachiClientError(Exception):
    """Base exception for HitachiSessionClient errors."""
    pass


class ConnectionError(HitachiClientError):
    """Raised when the REST API server cannot be reached."""
    pass


class AuthenticationError(HitachiClientError):
    """Raised when authentication fails."""
    pass


class DataCollectionError(HitachiClientError):
    """Raised when a request fails or returns unusable data."""
    pass


class ApiVersionError(HitachiClientError):
    """Raised when the REST API version is unusable or too old."""
    pass


class StorageSelectionError(HitachiClientError):
    """Raised when no single storage device can be selected."""
    pass


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Parse a dotted numeric version, e.g. '1.5.0' -> (1, 5, 0).

    Raises:
        ApiVersionError: If any component is not a number
    """
    try:
        return tuple(int(part) for part in version.strip().split('.'))
    except (AttributeError, ValueError) as e:
        raise ApiVersionError(
            f"The REST API version ({version}) could not be converted."
        ) from e


class HitachiSessionClient:
    """
    Client for the Configuration Manager REST API.

    Requests are authenticated with HTTP basic auth until a session is
    opened, and with the session token afterwards. Use it as a context
    manager so the session token is always released.

    Attributes:
        config: Connection and report settings
        session: requests.Session used for every call
        storage_device_id: Selected storage device, once known
    """

    def __init__(self, config: HitachiConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.verify = config.verify_ssl
        self.session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })
        if not config.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.storage_device_id: Optional[str] = config.storage_device_id
        self.token: Optional[str] = None
        self.session_id: Optional[int] = None

        logger.info(f"Using Configuration Manager REST API at {config.base_url}")

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None
    ) -> Any:
        """
        Send one request and return the decoded JSON body.

        Raises:
            ConnectionError: If the host cannot be reached
            AuthenticationError: On HTTP 401
            DataCollectionError: On any other request failure, error status or non-JSON body
        """
        url = f"{base_url or self.config.base_url}{path}"
        headers = {}
        auth = None
        if self.token:
            headers['Authorization'] = f"Session {self.token}"
        else:
            auth = (self.config.username, self.config.password)

        logger.debug(f"{method} {url} params={params}")

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                auth=auth,
                timeout=self.config.timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error(f"Failed to connect to {url}: {e}")
            raise ConnectionError(
                f"The request cannot be executed as the host/IP does not exist "
                f"or the port number does not match ('{url}')."
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request {method} {url} failed: {e}")
            raise DataCollectionError(f"The request {method} {url} failed: {e}") from e

        if response.status_code == 401:
            logger.error(f"Authentication failed for {url}")
            raise AuthenticationError(
                "Invalid credentials. Verify username and password."
            )

        payload = self._decode(response, method, url)

        if not response.ok:
            message = payload.get('message') if isinstance(payload, dict) else None
            logger.error(f"{method} {url} failed with HTTP {response.status_code}")
            raise DataCollectionError(
                f"The request {method} {url} ended with an error "
                f"(HTTP {response.status_code}): {message or response.text}"
            )

        return payload

    @staticmethod
    def _decode(response: requests.Response, method: str, url: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            if response.status_code == 404:
                raise ConnectionError(
                    f"The specified host/IP does not answer REST API requests ('{url}')."
                ) from e
            raise DataCollectionError(
                f"The response of {method} {url} is not in JSON format."
            ) from e

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, what: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DataCollectionError(f"Unexpected {what} response: {e}") from e

    def _storage_path(self, suffix: str) -> str:
        if not self.storage_device_id:
            raise StorageSelectionError("The storage device id must not be empty")
        return f"{STORAGES_PATH}/{self.storage_device_id}{suffix}"

    def get_api_version(self) -> str:
        """
        Get the REST API version of the server.

        API Path: /ConfigurationManager/configuration/version
        """
        payload = self._request('GET', VERSION_PATH)
        info = self._parse(ApiVersionInfo, payload, 'version')
        logger.info(f"REST API version: {info.api_version}")
        return info.api_version

    def check_api_version(self, version: Optional[str] = None) -> str:
        """
        Verify the server runs at least config.min_api_version.

        Raises:
            ApiVersionError: If the version is older or unparsable
        """
        version = version or self.get_api_version()
        if parse_version(version) < parse_version(self.config.min_api_version):
            raise ApiVersionError(
                f"The REST API version you are running on ({version}) is not "
                f"supported to provide the data needed. It must be at least "
                f"version '{self.config.min_api_version}'."
            )
        return version

    def get_storage_systems(self, base_url: Optional[str] = None) -> List[StorageSystem]:
        """
        List storage systems known to the server.

        API Path: /ConfigurationManager/v1/objects/storages
        """
        payload = self._request('GET', STORAGES_PATH, base_url=base_url)
        return [
            self._parse(StorageSystem, item, 'storage system')
            for item in unwrap_data(payload, self.config.data_element)
        ]

    def select_storage_device_id(self) -> str:
        """
        Select the storage device all further requests address.

        A configured storage device id must exist on the server. Without
        one, the server must know exactly one storage system.

        Raises:
            StorageSelectionError: If no single storage device can be chosen
        """
        systems = self.get_storage_systems()

        if self.storage_device_id:
            known = [s.storage_device_id for s in systems]
            if self.storage_device_id not in known:
                raise StorageSelectionError(
                    f"Specified storage device '{self.storage_device_id}' not found. "
                    f"Available: {known}"
                )
            return self.storage_device_id

        if len(systems) == 1:
            self.storage_device_id = systems[0].storage_device_id
            logger.info(f"Using storage system {systems[0].describe()}")
            return self.storage_device_id

        if not systems:
            raise StorageSelectionError(
                "No storage system is registered. Register one with --register-storage."
            )
        choices = '\n'.join(f"  {s.describe()}" for s in systems)
        raise StorageSelectionError(
            f"More than one storage system is available, choose one with "
            f"--storage-device-id:\n{choices}"
        )

    def register_storage(self, storage_host: str) -> str:
        """
        Register a storage system with an HCS Configuration Manager server.

        The storage SVP is queried directly with the configured credentials,
        which therefore must be those of a storage user. Registration is
        skipped if a system with the same serial number already exists.

        Args:
            storage_host: IP address or hostname of the storage SVP

        Returns:
            Storage device id of the (new or existing) registration
        """
        registered = self.get_storage_systems()

        storage_port = 443 if self.config.protocol == 'https' else 80
        storage_url = f"{self.config.protocol}://{storage_host}:{storage_port}"
        remote = self.get_storage_systems(base_url=storage_url)
        if not remote:
            raise StorageSelectionError(f"No storage system reported by {storage_host}")
        target = remote[0]

        for system in registered:
            if system.serial_number == target.serial_number:
                logger.warning(
                    f"The storage {target.serial_number} already exists. "
                    f"The registration process will be skipped."
                )
                self.storage_device_id = system.storage_device_id
                return self.storage_device_id

        logger.info(f"Registering storage {target.describe()}")
        payload = self._request('POST', STORAGES_PATH, body={
            'svpIp': target.svp_ip or storage_host,
            'serialNumber': target.serial_number,
            'model': target.model,
        })
        storage_device_id = payload.get('storageDeviceId') if isinstance(payload, dict) else None
        if not isinstance(storage_device_id, str):
            raise DataCollectionError(
                f"Storage registration returned no storage device id: {payload}"
            )
        self.storage_device_id = storage_device_id
        return storage_device_id

    def open_session(self) -> SessionToken:
        """
        Create a session and authenticate further requests with its token.

        API Path: /ConfigurationManager/v1/objects/storages/{id}/sessions/
        """
        payload = self._request('POST', self._storage_path('/sessions/'))
        session = self._parse(SessionToken, payload, 'session')
        self.token = session.token
        self.session_id = session.session_id
        logger.info(f"Session {session.session_id} created")
        return session

    def close_session(self) -> None:
        """Delete the current session, if any."""
        if not self.token:
            return
        session_id = self.session_id
        try:
            self._request(
                'DELETE',
                self._storage_path(f"/sessions/{session_id}"),
                body={'force': False}
            )
            logger.info(f"Session {session_id} deleted")
        finally:
            self.token = None
            self.session_id = None

    def get_pools(self) -> Any:
        """
        Get the raw pools response, including the FMC detail fields.

        The response is returned undecoded; the pool metrics engine
        validates its shape.

        API Path: /ConfigurationManager/v1/objects/storages/{id}/pools
        """
        logger.info("Get pool information")
        return self._request(
            'GET',
            self._storage_path('/pools'),
            params={'detailInfoType': 'FMC'}
        )

    def get_host_groups(self) -> List[HostGroup]:
        payload = self._request(
            'GET',
            self._storage_path('/host-groups'),
            params={'count': self.config.max_element_count}
        )
        return [
            self._parse(HostGroup, item, 'host group')
            for item in unwrap_data(payload, self.config.data_element)
        ]

    def get_luns(self, host_group: HostGroup) -> List[LunRecord]:
        payload = self._request(
            'GET',
            self._storage_path('/luns'),
            params={
                'portId': host_group.port_id,
                'hostGroupNumber': host_group.host_group_number,
            }
        )
        return [
            self._parse(LunRecord, item, 'LUN')
            for item in unwrap_data(payload, self.config.data_element)
        ]

    def get_lun_reservations(self) -> Iterator[LunReservation]:
        """
        Walk all host groups and yield every LUN with its reserve flags.

        Host groups and LUNs are visited in response order.
        """
        host_groups = self.get_host_groups()
        logger.info(f"Found {len(host_groups)} host group(s)")

        for host_group in host_groups:
            logger.info(
                f"Get the host group information: {host_group.port_id} "
                f"{host_group.host_group_name}({host_group.host_group_number})"
            )
            for lun in self.get_luns(host_group):
                yield LunReservation.from_records(host_group, lun)

    def close(self):
        """
        Release the session token and the HTTP connection pool.
        """
        try:
            self.close_session()
        except HitachiClientError as e:
            logger.warning(f"Error closing session: {e}")
        finally:
            self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures the session is released."""
        self.close()
