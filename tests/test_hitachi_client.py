"""
Tests for the Configuration Manager session client
"""
from unittest.mock import MagicMock

import pytest
import requests

from conftest import make_response
from hitachi_client import (
    ApiVersionError,
    AuthenticationError,
    ConnectionError,
    DataCollectionError,
    HitachiSessionClient,
    StorageSelectionError,
    parse_version,
)


STORAGE_ITEM = {
    "storageDeviceId": "800000058068",
    "model": "VSP G1000",
    "serialNumber": 58068,
    "svpIp": "10.70.4.145",
}

OTHER_STORAGE_ITEM = {
    "storageDeviceId": "886000412345",
    "model": "VSP G600",
    "serialNumber": 412345,
    "svpIp": "10.70.4.146",
}

SESSION_ITEM = {"token": "b74777a3-f9f0-4ea8-bd8f-09847fac48d3", "sessionId": 3}


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(config, session):
    return HitachiSessionClient(config, session=session)


def request_call(session, index):
    """Return (method, url, kwargs) of the index-th request."""
    args, kwargs = session.request.call_args_list[index]
    return args[0], args[1], kwargs


class TestParseVersion:
    def test_parse(self):
        assert parse_version("1.9.0") == (1, 9, 0)
        assert parse_version("1.10") == (1, 10)

    def test_unparsable(self):
        with pytest.raises(ApiVersionError):
            parse_version("1.x.0")


class TestRequests:
    def test_session_setup(self, config, session):
        HitachiSessionClient(config, session=session)
        assert session.verify is False
        session.headers.update.assert_called_once_with({
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })

    def test_basic_auth_without_session(self, client, session):
        session.request.return_value = make_response(payload={"apiVersion": "1.9.0"})
        client.get_api_version()

        method, url, kwargs = request_call(session, 0)
        assert method == 'GET'
        assert url == "https://10.0.1.1:443/ConfigurationManager/configuration/version"
        assert kwargs['auth'] == ('restuser', 'restpass')
        assert 'Authorization' not in kwargs['headers']
        assert kwargs['timeout'] == 30.0

    def test_connection_refused(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ConnectionError):
            client.get_api_version()

    def test_timeout(self, client, session):
        session.request.side_effect = requests.exceptions.Timeout("timed out")
        with pytest.raises(ConnectionError):
            client.get_api_version()

    @pytest.mark.parametrize("error", [
        requests.exceptions.TooManyRedirects("Exceeded 30 redirects."),
        requests.exceptions.InvalidURL("Invalid URL"),
        requests.exceptions.ChunkedEncodingError("Connection broken"),
    ])
    def test_other_request_failures(self, client, session, error):
        session.request.side_effect = error
        with pytest.raises(DataCollectionError):
            client.get_api_version()

    def test_unauthorized(self, client, session):
        session.request.return_value = make_response(401, payload={"message": "KART30005-E"})
        with pytest.raises(AuthenticationError):
            client.get_storage_systems()

    def test_error_status_includes_message(self, client, session):
        session.request.return_value = make_response(
            503, payload={"message": "The storage system is busy."}
        )
        with pytest.raises(DataCollectionError, match="The storage system is busy."):
            client.get_storage_systems()

    def test_html_not_found(self, client, session):
        session.request.return_value = make_response(404, text="<html>Not Found</html>")
        with pytest.raises(ConnectionError):
            client.get_api_version()

    def test_non_json_body(self, client, session):
        session.request.return_value = make_response(200, text="<html></html>")
        with pytest.raises(DataCollectionError):
            client.get_api_version()

    def test_unexpected_shape(self, client, session):
        session.request.return_value = make_response(payload={"version": "1.9.0"})
        with pytest.raises(DataCollectionError):
            client.get_api_version()


class TestApiVersion:
    def test_supported(self, client, session):
        session.request.return_value = make_response(
            payload={"productName": "Configuration Manager REST", "apiVersion": "1.9.0"}
        )
        assert client.check_api_version() == "1.9.0"

    def test_minimum_version_accepted(self, client):
        assert client.check_api_version("1.5.0") == "1.5.0"

    def test_too_old(self, client):
        with pytest.raises(ApiVersionError, match="at least"):
            client.check_api_version("1.4.2")

    def test_minor_compared_numerically(self, client):
        assert client.check_api_version("1.10.0") == "1.10.0"


class TestStorageSelection:
    def test_single_storage(self, client, session):
        session.request.return_value = make_response(payload={"data": [STORAGE_ITEM]})
        assert client.select_storage_device_id() == "800000058068"
        assert client.storage_device_id == "800000058068"

    def test_multiple_storages_lists_choices(self, client, session):
        session.request.return_value = make_response(
            payload={"data": [STORAGE_ITEM, OTHER_STORAGE_ITEM]}
        )
        with pytest.raises(StorageSelectionError) as excinfo:
            client.select_storage_device_id()
        assert "Serial:58068" in str(excinfo.value)
        assert "Serial:412345" in str(excinfo.value)

    def test_no_storage(self, client, session):
        session.request.return_value = make_response(payload={"data": []})
        with pytest.raises(StorageSelectionError):
            client.select_storage_device_id()

    def test_configured_storage(self, config, session):
        client = HitachiSessionClient(
            config.with_overrides(storage_device_id="886000412345"), session=session
        )
        session.request.return_value = make_response(
            payload={"data": [STORAGE_ITEM, OTHER_STORAGE_ITEM]}
        )
        assert client.select_storage_device_id() == "886000412345"

    def test_configured_storage_missing(self, config, session):
        client = HitachiSessionClient(
            config.with_overrides(storage_device_id="999999999999"), session=session
        )
        session.request.return_value = make_response(payload={"data": [STORAGE_ITEM]})
        with pytest.raises(StorageSelectionError, match="not found"):
            client.select_storage_device_id()

    def test_path_requires_storage(self, client):
        with pytest.raises(StorageSelectionError):
            client.get_pools()


class TestSessions:
    def test_open_and_close(self, client, session):
        client.storage_device_id = "800000058068"
        session.request.side_effect = [
            make_response(payload=SESSION_ITEM),
            make_response(payload={"data": []}),
            make_response(payload={"affectedResources": []}),
        ]

        client.open_session()
        assert client.token == SESSION_ITEM["token"]
        assert client.session_id == 3

        client.get_pools()
        method, url, kwargs = request_call(session, 1)
        assert kwargs['headers']['Authorization'] == f"Session {SESSION_ITEM['token']}"
        assert kwargs['auth'] is None

        client.close_session()
        method, url, kwargs = request_call(session, 2)
        assert method == 'DELETE'
        assert url.endswith("/storages/800000058068/sessions/3")
        assert kwargs['json'] == {'force': False}
        assert client.token is None

    def test_open_session_path(self, client, session):
        client.storage_device_id = "800000058068"
        session.request.return_value = make_response(payload=SESSION_ITEM)
        client.open_session()

        method, url, kwargs = request_call(session, 0)
        assert method == 'POST'
        assert url == (
            "https://10.0.1.1:443/ConfigurationManager/v1/objects/storages/"
            "800000058068/sessions/"
        )
        assert kwargs['auth'] == ('restuser', 'restpass')

    def test_close_without_session(self, client, session):
        client.close_session()
        session.request.assert_not_called()

    def test_token_cleared_when_delete_fails(self, client, session):
        client.storage_device_id = "800000058068"
        client.token = "abc"
        client.session_id = 7
        session.request.return_value = make_response(500, payload={"message": "failed"})
        with pytest.raises(DataCollectionError):
            client.close_session()
        assert client.token is None

    def test_context_manager_releases_session(self, config, session):
        session.request.side_effect = [
            make_response(payload=SESSION_ITEM),
            make_response(payload={}),
        ]
        with HitachiSessionClient(config, session=session) as client:
            client.storage_device_id = "800000058068"
            client.open_session()

        method, _, _ = request_call(session, 1)
        assert method == 'DELETE'
        session.close.assert_called_once()

    def test_close_logs_delete_failure(self, config, session, caplog):
        client = HitachiSessionClient(config, session=session)
        client.storage_device_id = "800000058068"
        client.token = "abc"
        client.session_id = 7
        session.request.side_effect = requests.exceptions.ConnectionError("gone")

        client.close()

        assert "Error closing session" in caplog.text
        session.close.assert_called_once()


class TestCollection:
    def test_get_pools_requests_fmc_details(self, client, session):
        client.storage_device_id = "800000058068"
        payload = {"data": [{"poolId": 0}]}
        session.request.return_value = make_response(payload=payload)

        assert client.get_pools() == payload
        method, url, kwargs = request_call(session, 0)
        assert url.endswith("/storages/800000058068/pools")
        assert kwargs['params'] == {'detailInfoType': 'FMC'}

    def test_lun_reservations_in_response_order(self, client, session):
        client.storage_device_id = "800000058068"
        session.request.side_effect = [
            make_response(payload={"data": [
                {"hostGroupId": "CL1-A,0", "portId": "CL1-A", "hostGroupNumber": 0,
                 "hostGroupName": "1A-G00"},
                {"hostGroupId": "CL1-B,1", "portId": "CL1-B", "hostGroupNumber": 1,
                 "hostGroupName": "1B-G01"},
            ]}),
            make_response(payload={"data": [
                {"lunId": "CL1-A,0,0", "portId": "CL1-A", "hostGroupNumber": 0,
                 "lun": 0, "ldevId": 256, "luHostReserve": {"pgrKey": False}},
                {"lunId": "CL1-A,0,1", "portId": "CL1-A", "hostGroupNumber": 0,
                 "lun": 1, "ldevId": 257, "luHostReserve": {"pgrKey": True}},
            ]}),
            make_response(payload={"data": [
                {"lunId": "CL1-B,1,1", "portId": "CL1-B", "hostGroupNumber": 1,
                 "lun": 1, "ldevId": 13312, "luHostReserve": {"pgrKey": False}},
            ]}),
        ]

        reservations = list(client.get_lun_reservations())

        assert [(r.port_id, r.lun) for r in reservations] == [
            ("CL1-A", 0), ("CL1-A", 1), ("CL1-B", 1)
        ]
        assert reservations[1].reservation_text == "(pgrKey=true)"
        assert request_call(session, 0)[2]['params'] == {'count': 16348}
        assert request_call(session, 2)[2]['params'] == {
            'portId': 'CL1-B', 'hostGroupNumber': 1
        }


class TestRegisterStorage:
    def test_existing_serial_is_skipped(self, client, session, caplog):
        session.request.side_effect = [
            make_response(payload={"data": [STORAGE_ITEM]}),
            make_response(payload={"data": [STORAGE_ITEM]}),
        ]

        assert client.register_storage("10.70.4.145") == "800000058068"
        assert session.request.call_count == 2
        assert "already exists" in caplog.text

        _, url, _ = request_call(session, 1)
        assert url == "https://10.70.4.145:443/ConfigurationManager/v1/objects/storages"

    def test_new_storage_is_registered(self, client, session):
        session.request.side_effect = [
            make_response(payload={"data": [STORAGE_ITEM]}),
            make_response(payload={"data": [OTHER_STORAGE_ITEM]}),
            make_response(payload={"storageDeviceId": "886000412345"}),
        ]

        assert client.register_storage("10.70.4.146") == "886000412345"
        assert client.storage_device_id == "886000412345"

        method, url, kwargs = request_call(session, 2)
        assert method == 'POST'
        assert kwargs['json'] == {
            'svpIp': '10.70.4.146',
            'serialNumber': 412345,
            'model': 'VSP G600',
        }
