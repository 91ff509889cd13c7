import pytest
import requests

from sonarr_api import SonarrClient, SonarrHTTPError, SonarrTransportError

from conftest import FakeResponse, FakeSession


def test_requests_carry_api_key_and_prefix(client, session):
    session.routes[("GET", "/series/lookup")] = FakeResponse(200, [{"title": "Show"}])

    assert client.lookup_series("Show & Friends") == [{"title": "Show"}]

    call = session.calls[0]
    assert call.path == "/series/lookup"
    assert call.params == {"term": "Show & Friends"}
    assert call.headers["X-Api-Key"] == "secret"
    assert call.timeout == 5


def test_json_body_on_mutating_calls(client, session):
    session.routes[("PUT", "/manualimport")] = FakeResponse(202, {})
    client.manual_import([{"path": "/d/a.mkv"}])
    call = session.calls_for("PUT", "/manualimport")[0]
    assert call.body == {"files": [{"path": "/d/a.mkv"}]}
    assert call.headers["Content-Type"] == "application/json"


def test_episode_listing_passes_series_id(client, session):
    session.routes[("GET", "/episode")] = FakeResponse(200, [{"id": 1}])
    assert client.get_episodes(9) == [{"id": 1}]
    assert session.calls[0].params == {"seriesId": 9}


def test_non_2xx_raises_http_error(client, session):
    session.routes[("POST", "/series")] = FakeResponse(400, [{"errorMessage": "bad"}])
    with pytest.raises(SonarrHTTPError) as exc:
        client.add_series({"title": "x"})
    assert exc.value.status_code == 400
    assert "bad" in exc.value.body


def test_transport_error_is_wrapped(client, session):
    session.routes[("GET", "/series")] = requests.ConnectionError("refused")
    with pytest.raises(SonarrTransportError) as exc:
        client.get_series()
    assert isinstance(exc.value.__cause__, requests.ConnectionError)


def test_get_is_retried_on_transport_errors_when_enabled():
    session = FakeSession({("GET", "/series"): [requests.Timeout("slow"), FakeResponse(200, [{"id": 3}])]})
    client = SonarrClient("http://sonarr", "k", session=session, retry_attempts=3, retry_wait=0)

    assert client.get_series() == [{"id": 3}]
    assert len(session.calls) == 2


def test_mutating_calls_are_never_retried():
    session = FakeSession({("POST", "/series"): [requests.ConnectionError("down"), FakeResponse(201, {"id": 1})]})
    client = SonarrClient("http://sonarr", "k", session=session, retry_attempts=3, retry_wait=0)

    with pytest.raises(SonarrTransportError):
        client.add_series({"title": "x"})
    assert len(session.calls) == 1


def test_http_errors_are_not_retried():
    session = FakeSession({("GET", "/series"): [FakeResponse(500, {}), FakeResponse(200, [])]})
    client = SonarrClient("http://sonarr", "k", session=session, retry_attempts=3, retry_wait=0)

    with pytest.raises(SonarrHTTPError):
        client.get_series()
    assert len(session.calls) == 1


def test_manual_import_accepts_non_json_2xx_body(client, session):
    session.routes[("PUT", "/manualimport")] = FakeResponse(202, body=b"Accepted")
    assert client.manual_import([{"path": "/d/a.mkv"}]) is None


@pytest.mark.parametrize("method, path, call", [
    ("GET", "/series", lambda c: c.get_series()),
    ("GET", "/series/lookup", lambda c: c.lookup_series("Show")),
    ("GET", "/episode", lambda c: c.get_episodes(1)),
])
def test_listing_with_wrong_shape_is_a_transport_error(client, session, method, path, call):
    session.routes[(method, path)] = FakeResponse(200, {"message": "weird"})
    with pytest.raises(SonarrTransportError, match="expected a list"):
        call(client)


def test_listing_items_must_be_objects(client, session):
    session.routes[("GET", "/series")] = FakeResponse(200, ["Show"])
    with pytest.raises(SonarrTransportError):
        client.get_series()


def test_add_series_with_wrong_shape_is_a_transport_error(client, session):
    session.routes[("POST", "/series")] = FakeResponse(201, [{"id": 1}])
    with pytest.raises(SonarrTransportError, match="expected an object"):
        client.add_series({"title": "x"})


def test_invalid_json_on_reads_is_a_transport_error(client, session):
    session.routes[("GET", "/series")] = FakeResponse(200, body=b"<html>")
    with pytest.raises(SonarrTransportError, match="invalid JSON"):
        client.get_series()
