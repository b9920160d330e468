"""
Unit tests for ShellyGateway.
"""

import io
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from home_dashboard.device_gateway import (
    DeviceUnreachable,
    InvalidArgument,
    SwitchResult,
    UnknownDevice,
    _urllib_transport,
)


class TestSetState:
    async def test_success_echoes_state(self, gateway_factory, make_transport):
        transport = make_transport(reply={"was_on": False})
        gw = gateway_factory(transport)

        result = await gw.set_state("front-light", True)

        assert result == SwitchResult(success=True, device_id="front-light", new_state=True, result={"was_on": False})
        assert result.as_dict() == {
            "success": True,
            "deviceId": "front-light",
            "newState": True,
            "result": {"was_on": False},
        }
        method, url, timeout_s = transport.calls[0]
        assert method == "POST"
        assert url == "http://192.168.1.23/rpc/Switch.Set?id=0&on=true"
        assert timeout_s == 0.5

    async def test_off_is_encoded_as_false(self, gateway_factory, make_transport):
        transport = make_transport(reply={})
        await gateway_factory(transport).set_state("garage-plug", False)
        assert transport.calls[0][1] == "http://192.168.1.24/rpc/Switch.Set?id=0&on=false"

    async def test_unreachable_device_fails_open(self, gateway_factory, unreachable_transport):
        result = await gateway_factory(unreachable_transport).set_state("front-light", True)

        assert result.as_dict() == {"success": True, "deviceId": "front-light", "newState": True, "simulated": True}

    @pytest.mark.parametrize("error", [TimeoutError("timed out"), socket.timeout("timed out"), RuntimeError("boom")])
    async def test_any_rpc_error_fails_open(self, gateway_factory, make_transport, error):
        result = await gateway_factory(make_transport(error=error)).set_state("front-light", False)
        assert result.success is True
        assert result.simulated is True
        assert result.new_state is False

    async def test_unknown_device_makes_no_call(self, gateway_factory, make_transport):
        transport = make_transport()
        with pytest.raises(UnknownDevice):
            await gateway_factory(transport).set_state("unknown-id", True)
        assert transport.calls == []

    async def test_sensor_only_device_is_not_controllable(self, gateway_factory, make_transport):
        transport = make_transport()
        with pytest.raises(UnknownDevice):
            await gateway_factory(transport).set_state("garage-temp", True)
        assert transport.calls == []

    @pytest.mark.parametrize("state", ["true", 1, 0, None, [], {"on": True}])
    async def test_non_boolean_state_is_rejected(self, gateway_factory, make_transport, state):
        transport = make_transport()
        with pytest.raises(InvalidArgument):
            await gateway_factory(transport).set_state("front-light", state)
        assert transport.calls == []

    async def test_repeated_set_is_safe(self, gateway_factory, make_transport):
        transport = make_transport(reply={})
        gw = gateway_factory(transport)
        first = await gw.set_state("front-light", True)
        second = await gw.set_state("front-light", True)
        assert first == second
        assert len(transport.calls) == 2


class TestGetStatus:
    async def test_parses_status(self, gateway_factory, make_transport):
        transport = make_transport(reply={"output": True, "apower": 12.5, "aenergy": {"total": 345.6}})
        st = await gateway_factory(transport).get_status("garage-plug")

        assert st.as_dict() == {"deviceId": "garage-plug", "state": True, "power": 12.5, "energy": 345.6}
        assert transport.calls[0][:2] == ("GET", "http://192.168.1.24/rpc/Switch.GetStatus?id=0")

    async def test_missing_fields_default_to_zero(self, gateway_factory, make_transport):
        st = await gateway_factory(make_transport(reply={})).get_status("front-light")
        assert (st.state, st.power, st.energy, st.simulated) == (False, 0.0, 0.0, False)

    async def test_unreachable_device_reports_simulated_off(self, gateway_factory, unreachable_transport):
        st = await gateway_factory(unreachable_transport).get_status("front-light")
        assert st.as_dict() == {"deviceId": "front-light", "state": False, "power": 0.0, "energy": 0.0, "simulated": True}

    async def test_unknown_device_makes_no_call(self, gateway_factory, make_transport):
        transport = make_transport()
        with pytest.raises(UnknownDevice):
            await gateway_factory(transport).get_status("unknown-id")
        assert transport.calls == []


class TestUrllibTransport:
    def test_returns_parsed_json(self):
        resp = MagicMock()
        resp.__enter__.return_value = resp
        resp.read.return_value = b'{"output": true}'
        with patch("urllib.request.urlopen", return_value=resp) as urlopen:
            assert _urllib_transport("GET", "http://192.168.1.23/rpc/Switch.GetStatus?id=0", 2.0) == {"output": True}
        req = urlopen.call_args.args[0]
        assert req.get_method() == "GET"
        assert urlopen.call_args.kwargs["timeout"] == 2.0

    def test_http_error_is_unreachable(self):
        err = urllib.error.HTTPError("http://x/rpc", 500, "Server Error", {}, io.BytesIO(b""))
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(DeviceUnreachable, match="500"):
                _urllib_transport("POST", "http://x/rpc", 1.0)

    def test_network_error_is_unreachable(self):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("no route to host")):
            with pytest.raises(DeviceUnreachable):
                _urllib_transport("POST", "http://x/rpc", 1.0)

    def test_non_json_body_is_unreachable(self):
        resp = MagicMock()
        resp.__enter__.return_value = resp
        resp.read.return_value = b"<html>login</html>"
        with patch("urllib.request.urlopen", return_value=resp):
            with pytest.raises(DeviceUnreachable, match="non-JSON"):
                _urllib_transport("GET", "http://x/rpc", 1.0)
