"""Unit tests for the Orthanc REST wrapper."""
import httpx
import pytest
import respx

from intake.services import orthanc_client

ORTHANC = "http://orthanc:8042"


@pytest.mark.asyncio
async def test_get_study():
    with respx.mock(base_url=ORTHANC) as mock_orthanc:
        mock_orthanc.get("/studies/abc").mock(
            return_value=httpx.Response(200, json={"ID": "abc", "Series": ["s1"]})
        )
        study = await orthanc_client.get_study("abc")

    assert study["Series"] == ["s1"]


@pytest.mark.asyncio
async def test_list_study_instances_and_simplified_tags():
    with respx.mock(base_url=ORTHANC) as mock_orthanc:
        mock_orthanc.get("/studies/abc/instances").mock(return_value=httpx.Response(200, json=[{"ID": "i1"}]))
        mock_orthanc.get("/instances/i1/simplified-tags").mock(
            return_value=httpx.Response(200, json={"PatientName": "DOE^JOHN"})
        )
        instances = await orthanc_client.list_study_instances("abc")
        tags = await orthanc_client.get_simplified_tags("i1")

    assert instances == [{"ID": "i1"}]
    assert tags["PatientName"] == "DOE^JOHN"


@pytest.mark.asyncio
async def test_error_status_raises():
    with respx.mock(base_url=ORTHANC) as mock_orthanc:
        mock_orthanc.get("/series/missing").mock(return_value=httpx.Response(404))
        with pytest.raises(httpx.HTTPStatusError):
            await orthanc_client.get_series("missing")


@pytest.mark.asyncio
async def test_probe_uses_short_timeout():
    with respx.mock(base_url=ORTHANC) as mock_orthanc:
        route = mock_orthanc.get("/instances/s1").mock(return_value=httpx.Response(200, json={"ID": "s1"}))
        await orthanc_client.get_instance("s1")

    timeouts = route.calls.last.request.extensions["timeout"]
    assert timeouts["read"] == orthanc_client.settings.orthanc_timeout_probe


@pytest.mark.asyncio
async def test_basic_auth_when_configured(monkeypatch):
    monkeypatch.setattr(orthanc_client.settings, "orthanc_user", "orthanc")
    monkeypatch.setattr(orthanc_client.settings, "orthanc_pass", "secret")
    with respx.mock(base_url=ORTHANC) as mock_orthanc:
        route = mock_orthanc.get("/system").mock(return_value=httpx.Response(200, json={"Version": "1.12.1"}))
        system = await orthanc_client.get_system()

    assert system["Version"] == "1.12.1"
    assert route.calls.last.request.headers["Authorization"].startswith("Basic ")
