"""
Tests for upscale_billing/config/supabase_config.py

Client initialization errors and the HTTP/2 retry wrapper.
"""

from unittest.mock import Mock, patch

import pytest

import upscale_billing.config.supabase_config as supabase_config_mod


@pytest.fixture(autouse=True)
def reset_client_state():
    supabase_config_mod._supabase_client = None
    supabase_config_mod._last_error = None
    supabase_config_mod._last_error_time = 0
    yield
    supabase_config_mod._supabase_client = None
    supabase_config_mod._last_error = None
    supabase_config_mod._last_error_time = 0


class TestGetSupabaseClient:
    def test_url_without_protocol_is_rejected(self):
        with patch.object(supabase_config_mod.Config, "SUPABASE_URL", "test.supabase.co"):
            with patch.object(supabase_config_mod.Config, "validate", return_value=True):
                with pytest.raises(RuntimeError) as exc_info:
                    supabase_config_mod.get_supabase_client()

        assert "https://" in str(exc_info.value)
        assert supabase_config_mod.get_initialization_status()["has_error"] is True

    def test_failed_initialization_is_cached(self):
        with patch.object(supabase_config_mod.Config, "validate", side_effect=RuntimeError("Missing SUPABASE_URL")):
            with pytest.raises(RuntimeError):
                supabase_config_mod.get_supabase_client()

        with patch.object(supabase_config_mod.Config, "validate") as mock_validate:
            with pytest.raises(RuntimeError, match="retry in"):
                supabase_config_mod.get_supabase_client()
            mock_validate.assert_not_called()


class TestIsHttp2ProtocolError:
    @pytest.mark.parametrize(
        "message",
        [
            "<ConnectionState.CLOSED: 6> StreamInputs.SEND_HEADERS",
            "Server disconnected: connection reset by peer",
            "received GOAWAY frame",
        ],
    )
    def test_detects_protocol_errors(self, message):
        assert supabase_config_mod.is_http2_protocol_error(Exception(message)) is True

    def test_ignores_ordinary_errors(self):
        assert supabase_config_mod.is_http2_protocol_error(Exception("duplicate key value")) is False


class TestExecuteWithRetry:
    def test_retries_protocol_error_with_fresh_client(self, monkeypatch):
        clients = [Mock(name="stale"), Mock(name="fresh")]
        monkeypatch.setattr(supabase_config_mod, "get_supabase_client", lambda: clients[0])
        monkeypatch.setattr(supabase_config_mod, "reset_supabase_client", lambda: clients.pop(0) and True)
        monkeypatch.setattr(supabase_config_mod.time, "sleep", lambda _s: None)

        calls = []

        def operation(client):
            calls.append(client)
            if len(calls) == 1:
                raise Exception("StreamInputs.RECV_DATA in state ConnectionState.CLOSED")
            return "ok"

        assert supabase_config_mod.execute_with_retry(operation, operation_name="test_op") == "ok"
        assert calls[0] is not calls[1]

    def test_other_errors_raise_immediately(self, monkeypatch):
        monkeypatch.setattr(supabase_config_mod, "get_supabase_client", lambda: Mock())
        operation = Mock(side_effect=ValueError("bad filter"))

        with pytest.raises(ValueError):
            supabase_config_mod.execute_with_retry(operation)

        operation.assert_called_once()

    def test_gives_up_after_max_retries(self, monkeypatch):
        monkeypatch.setattr(supabase_config_mod, "get_supabase_client", lambda: Mock())
        monkeypatch.setattr(supabase_config_mod, "reset_supabase_client", lambda: True)
        monkeypatch.setattr(supabase_config_mod.time, "sleep", lambda _s: None)
        operation = Mock(side_effect=Exception("h2_error: stream closed"))

        with pytest.raises(Exception, match="stream closed"):
            supabase_config_mod.execute_with_retry(operation, max_retries=2)

        assert operation.call_count == 3
