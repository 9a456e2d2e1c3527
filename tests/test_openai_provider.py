from unittest.mock import MagicMock, patch

import pytest

from wacanda.services.llm import LLMError, OpenAIProvider


def _mock_client(mock_client_class, status_code=200, json_data=None, text=""):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = json_data
    mock_response.text = text
    mock_client = MagicMock()
    mock_client.post.return_value = mock_response
    mock_client_class.return_value.__enter__.return_value = mock_client
    return mock_client


class TestOpenAIProvider:
    @patch("wacanda.services.llm.openai_provider.httpx.Client")
    def test_complete_builds_single_system_message(self, mock_client_class):
        mock_client = _mock_client(
            mock_client_class,
            json_data={
                "model": "gpt-4o-mini",
                "choices": [{"message": {"content": "We open at 9am."}}],
                "usage": {"total_tokens": 57},
            },
        )
        provider = OpenAIProvider("sk-test")

        response = provider.complete(
            "You are helpful.", ["Knowledge Base Context:\nOpen 9-18", ""], "When do you open?", timeout_seconds=5
        )

        assert response.content == "We open at 9am."
        assert response.tokens_used == 57
        messages = mock_client.post.call_args[1]["json"]["messages"]
        assert messages == [
            {"role": "system", "content": "You are helpful.\n\nKnowledge Base Context:\nOpen 9-18"},
            {"role": "user", "content": "When do you open?"},
        ]
        mock_client_class.assert_called_once_with(timeout=5)

    @patch("wacanda.services.llm.openai_provider.httpx.Client")
    def test_error_status_raises(self, mock_client_class):
        _mock_client(mock_client_class, status_code=429, text="rate limited")

        with pytest.raises(LLMError, match="429"):
            OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}])

    @patch("wacanda.services.llm.openai_provider.httpx.Client")
    def test_empty_completion_raises(self, mock_client_class):
        _mock_client(mock_client_class, json_data={"choices": [{"message": {"content": "  "}}]})

        with pytest.raises(LLMError):
            OpenAIProvider("sk-test").generate([{"role": "user", "content": "hi"}])
