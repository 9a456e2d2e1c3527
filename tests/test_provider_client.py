from unittest.mock import MagicMock, patch

import httpx

from wacanda.services.provider_client import ProviderClient, _unwrap_message_list


def _response(status_code=200, json_data=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.text = text
    return response


def _client_returning(mock_client_class, response=None, side_effect=None):
    mock_client = MagicMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client_class.return_value.__enter__.return_value = mock_client
    return mock_client


class TestUnwrapMessageList:
    def test_bare_list(self):
        assert _unwrap_message_list([{"key": {}}]) == [{"key": {}}]

    def test_paginated_envelope(self):
        data = {"messages": {"total": 1, "pages": 1, "records": [{"key": {"id": "m1"}}]}}
        assert _unwrap_message_list(data) == [{"key": {"id": "m1"}}]

    def test_messages_list_envelope(self):
        assert _unwrap_message_list({"messages": [{"key": {"id": "m1"}}]}) == [{"key": {"id": "m1"}}]

    def test_unexpected_shape(self):
        assert _unwrap_message_list("nope") == []


class TestListMessages:
    @patch("wacanda.services.provider_client.httpx.Client")
    def test_list_all_messages_posts_empty_filter(self, mock_client_class):
        mock_client = _client_returning(mock_client_class, _response(json_data=[{"key": {"id": "m1"}}]))
        client = ProviderClient("http://gateway:8080/", "secret")

        result = client.list_all_messages("acme-main")

        assert result.ok is True
        assert result.value == [{"key": {"id": "m1"}}]
        args, kwargs = mock_client.post.call_args
        assert args[0] == "http://gateway:8080/chat/findMessages/acme-main"
        assert kwargs["json"] == {}
        assert kwargs["headers"]["apikey"] == "secret"

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_list_messages_filters_by_jid(self, mock_client_class):
        mock_client = _client_returning(mock_client_class, _response(json_data={"messages": {"records": []}}))
        client = ProviderClient("http://gateway:8080", "secret")

        result = client.list_messages("acme-main", "5511999999999@s.whatsapp.net")

        assert result.value == []
        assert mock_client.post.call_args[1]["json"] == {
            "where": {"key": {"remoteJid": "5511999999999@s.whatsapp.net"}}
        }

    def test_missing_api_key(self):
        result = ProviderClient("http://gateway:8080", None).list_all_messages("acme-main")

        assert result.ok is False
        assert result.error_code == "not_configured"

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_timeout(self, mock_client_class):
        _client_returning(mock_client_class, side_effect=httpx.ReadTimeout("slow"))

        result = ProviderClient("http://gateway:8080", "secret").list_all_messages("acme-main")

        assert result.error_code == "provider_timeout"

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_connection_error(self, mock_client_class):
        _client_returning(mock_client_class, side_effect=httpx.ConnectError("refused"))

        result = ProviderClient("http://gateway:8080", "secret").list_all_messages("acme-main")

        assert result.error_code == "provider_unavailable"

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_http_error_status(self, mock_client_class):
        _client_returning(mock_client_class, _response(status_code=404, text="instance not found"))

        result = ProviderClient("http://gateway:8080", "secret").list_all_messages("ghost")

        assert result.error_code == "provider_http_error"
        assert "404" in result.error

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_invalid_json(self, mock_client_class):
        response = _response()
        response.json.side_effect = ValueError("not json")
        _client_returning(mock_client_class, response)

        result = ProviderClient("http://gateway:8080", "secret").list_all_messages("acme-main")

        assert result.error_code == "provider_invalid_response"


class TestSendMessage:
    @patch("wacanda.services.provider_client.httpx.Client")
    def test_returns_provider_message_id(self, mock_client_class):
        mock_client = _client_returning(
            mock_client_class, _response(status_code=201, json_data={"key": {"id": "BAE5F00D"}, "status": "PENDING"})
        )

        result = ProviderClient("http://gateway:8080", "secret").send_message(
            "acme-main", "5511999999999@s.whatsapp.net", "Hello!"
        )

        assert result.value == {"id": "BAE5F00D"}
        args, kwargs = mock_client.post.call_args
        assert args[0] == "http://gateway:8080/message/sendText/acme-main"
        assert kwargs["json"]["number"] == "5511999999999@s.whatsapp.net"
        assert kwargs["json"]["textMessage"] == {"text": "Hello!"}
        assert kwargs["json"]["options"]["presence"] == "composing"

    @patch("wacanda.services.provider_client.httpx.Client")
    def test_missing_id_is_invalid(self, mock_client_class):
        _client_returning(mock_client_class, _response(json_data={"status": "PENDING"}))

        result = ProviderClient("http://gateway:8080", "secret").send_message("acme-main", "x", "Hello!")

        assert result.error_code == "provider_invalid_response"
