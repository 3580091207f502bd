"""
Tests for the upstream HTTP client and the database row source.
"""
import pytest
import requests
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from reportmate.db import DatabaseRowSource, application_row_to_document
from reportmate.errors import ConfigurationError, UpstreamDetailError, UpstreamListError
from reportmate.upstream import UpstreamClient, unwrap_document, unwrap_list

from tests.fakes import SECRET, UPSTREAM, FakeSession


def test_unwrap_list_accepts_bare_and_wrapped_arrays():
    assert unwrap_list([{"a": 1}]) == [{"a": 1}]
    assert unwrap_list({"devices": [{"a": 1}]}) == [{"a": 1}]
    assert unwrap_list({"installs": [{"b": 2}]}, keys=("devices", "installs")) == [{"b": 2}]


def test_unwrap_list_rejects_other_shapes():
    with pytest.raises(ValueError):
        unwrap_list({"error": "nope"})
    with pytest.raises(ValueError):
        unwrap_list("devices")


def test_unwrap_document_strips_device_wrapper():
    assert unwrap_document({"success": True, "device": {"serialNumber": "S1"}}) == {"serialNumber": "S1"}
    assert unwrap_document({"serialNumber": "S1"}) == {"serialNumber": "S1"}


def test_headers_prefer_internal_secret():
    client = UpstreamClient(UPSTREAM, internal_secret=SECRET, passphrase="pass")
    headers = client.headers()
    assert headers["X-Internal-Secret"] == SECRET
    assert "X-API-PASSPHRASE" not in headers
    assert headers["User-Agent"] == "ReportMate-Frontend/1.0"
    assert headers["Cache-Control"] == "no-cache"


def test_headers_fall_back_to_passphrase():
    headers = UpstreamClient(UPSTREAM, passphrase="pass").headers()
    assert headers["X-API-PASSPHRASE"] == "pass"
    assert "X-Internal-Secret" not in headers


def test_missing_base_url_raises_configuration_error():
    client = UpstreamClient(None, session=FakeSession())
    with pytest.raises(ConfigurationError) as excinfo:
        client.list_records("/api/devices")
    assert "API_BASE_URL" in excinfo.value.details
    assert client.session.calls == []


def test_base_url_trailing_slash_is_trimmed():
    client = UpstreamClient(UPSTREAM + "/")
    assert client.url("/api/events") == f"{UPSTREAM}/api/events"


def test_detail_url_quotes_identifier():
    client = UpstreamClient(UPSTREAM)
    assert client.detail_url("AB 12/3") == f"{UPSTREAM}/api/device/AB%2012%2F3"


def test_list_records_sends_headers_and_params():
    session = FakeSession({f"{UPSTREAM}/api/events": {"events": [{"id": 1}]}})
    client = UpstreamClient(UPSTREAM, internal_secret=SECRET, session=session)

    assert client.list_records("/api/events", keys=("events",), params={"limit": 5}) == [{"id": 1}]
    call = session.calls[0]
    assert call["params"] == {"limit": 5}
    assert call["headers"]["X-Internal-Secret"] == SECRET


@pytest.mark.parametrize("route, fragment", [
    ((500, {"error": "boom"}), "HTTP 500"),
    (requests.ConnectionError("refused"), "request failed"),
    ({"unexpected": True}, "unexpected body"),
])
def test_list_failures_become_upstream_list_errors(route, fragment):
    session = FakeSession({f"{UPSTREAM}/api/devices": route})
    client = UpstreamClient(UPSTREAM, session=session)

    with pytest.raises(UpstreamListError) as excinfo:
        client.list_records("/api/devices")
    assert fragment in excinfo.value.details


def test_get_device_returns_none_on_404():
    client = UpstreamClient(UPSTREAM, session=FakeSession())
    assert client.get_device("missing") is None


def test_get_device_unwraps_document():
    session = FakeSession({f"{UPSTREAM}/api/device/S1": {"device": {"serialNumber": "S1"}}})
    assert UpstreamClient(UPSTREAM, session=session).get_device("S1") == {"serialNumber": "S1"}


def test_get_device_other_failures_raise():
    session = FakeSession({f"{UPSTREAM}/api/device/S1": (502, None)})
    with pytest.raises(UpstreamDetailError) as excinfo:
        UpstreamClient(UPSTREAM, session=session).get_device("S1")
    assert excinfo.value.entity_id == "S1"
    assert excinfo.value.details == "HTTP 502"


def test_get_detail_rejects_non_object():
    session = FakeSession({f"{UPSTREAM}/api/device/S1": ["a", "b"]})
    with pytest.raises(UpstreamDetailError):
        UpstreamClient(UPSTREAM, session=session).get_detail(f"{UPSTREAM}/api/device/S1", 5)


# =============================================================================
# Database rows
# =============================================================================

@pytest.fixture
def sqlite_rows():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE snapshots (serial_number TEXT, applications_data TEXT)"))
        conn.execute(text(
            "INSERT INTO snapshots VALUES "
            "('S1', '{\"installedApplications\": [{\"name\": \"Firefox\"}]}'), "
            "('S2', 'not json')"
        ))
    rows = DatabaseRowSource(engine)
    yield rows
    rows.dispose()


def test_fetch_rows_decodes_json_columns(sqlite_rows):
    rows = sqlite_rows.fetch_rows(
        "SELECT * FROM snapshots WHERE serial_number = :serial", {"serial": "S1"}
    )
    assert rows == [{
        "serial_number": "S1",
        "applications_data": {"installedApplications": [{"name": "Firefox"}]},
    }]


def test_fetch_rows_leaves_invalid_json_as_text(sqlite_rows):
    rows = sqlite_rows.fetch_rows("SELECT * FROM snapshots WHERE serial_number = 'S2'")
    assert rows[0]["applications_data"] == "not json"


def test_application_row_to_document_shape():
    document = application_row_to_document({
        "serial_number": "S1",
        "device_id": "dev-1",
        "last_seen": "2026-10-01T00:00:00Z",
        "applications_data": {"installedApplications": [{"name": "Firefox"}]},
        "device_name": "Lab-01",
        "computer_name": None,
    })
    assert document["serialNumber"] == "S1"
    assert document["deviceId"] == "dev-1"
    assert document["modules"]["applications"]["installedApplications"] == [{"name": "Firefox"}]
    assert document["modules"]["inventory"]["deviceName"] == "Lab-01"
