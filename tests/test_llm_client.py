from unittest import mock

import pytest
import requests

from taskpilot.errors import AINotConfiguredError, AIServiceError
from taskpilot.llm_client import LLMClient
from taskpilot.llm_json_extractor import extract_code_block, extract_json_from_llm_response


def _response(status_code=200, payload=None):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = "error body"
    return response


def test_extract_prefers_fenced_json():
    text = 'Sure!\n```json\n{"tasks": []}\n```\nAnything else?'
    assert extract_json_from_llm_response(text) == '{"tasks": []}'


def test_extract_outermost_structure():
    assert extract_json_from_llm_response('result: {"a": [1, 2]} done') == '{"a": [1, 2]}'
    assert extract_json_from_llm_response('list: [{"a": 1}]') == '[{"a": 1}]'
    assert extract_json_from_llm_response("no json here") is None
    assert extract_json_from_llm_response("") is None


def test_extract_code_block():
    text = "Here you go:\n```jsx\nexport default function App() {}\n```"
    assert extract_code_block(text, ["jsx", "js"]) == "export default function App() {}"
    assert extract_code_block(text, ["python"]) is None


def test_not_configured_without_key():
    client = LLMClient(api_key="")
    assert not client.is_configured
    with pytest.raises(AINotConfiguredError):
        client.chat_completion([{"role": "user", "content": "hi"}])
    assert LLMClient(provider="ollama").is_configured


def test_openai_chat_completion_payload():
    client = LLMClient(base_url="https://llm.local/", api_key="k", model="m1")
    reply = {"id": "cmpl-1", "choices": [{"message": {"content": "hello"}}]}
    with mock.patch("taskpilot.llm_client.requests.post", return_value=_response(payload=reply)) as post:
        result = client.chat_completion([{"role": "user", "content": "hi"}], max_tokens=50, json_mode=True)

    assert result == {"id": "cmpl-1", "role": "assistant", "content": "hello", "model": "m1"}
    url = post.call_args.args[0]
    payload = post.call_args.kwargs["json"]
    assert url == "https://llm.local/v1/chat/completions"
    assert payload["max_tokens"] == 50
    assert payload["response_format"] == {"type": "json_object"}
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"


def test_ollama_chat_completion():
    client = LLMClient(base_url="http://localhost:11434", provider="ollama", model="llama3")
    reply = {"message": {"content": "hi there"}}
    with mock.patch("taskpilot.llm_client.requests.post", return_value=_response(payload=reply)) as post:
        result = client.chat_completion([{"role": "user", "content": "hi"}], json_mode=True)
    assert result["content"] == "hi there"
    assert post.call_args.args[0] == "http://localhost:11434/api/chat"
    assert post.call_args.kwargs["json"]["format"] == "json"


def test_chat_completion_errors():
    client = LLMClient(api_key="k")
    with mock.patch("taskpilot.llm_client.requests.post", return_value=_response(status_code=500)):
        with pytest.raises(AIServiceError):
            client.chat_completion([{"role": "user", "content": "hi"}])
    with mock.patch("taskpilot.llm_client.requests.post", side_effect=requests.ConnectionError("down")):
        with pytest.raises(AIServiceError):
            client.chat_completion([{"role": "user", "content": "hi"}])


def test_unreadable_bodies_are_service_errors():
    client = LLMClient(api_key="k", model="gpt-4o")
    html = _response()
    html.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    html.text = "<html>Bad gateway</html>"
    with mock.patch("taskpilot.llm_client.requests.post", return_value=html):
        with pytest.raises(AIServiceError):
            client.chat_completion([{"role": "user", "content": "hi"}])
    with mock.patch("taskpilot.llm_client.requests.post", return_value=_response(payload=["not", "a", "dict"])):
        with pytest.raises(AIServiceError):
            client.chat_completion([{"role": "user", "content": "hi"}])
    with mock.patch("taskpilot.llm_client.requests.post", return_value=_response(payload={"choices": ["x"]})):
        assert client.chat_completion([{"role": "user", "content": "hi"}])["content"] == ""
    with mock.patch("taskpilot.llm_client.requests.get", return_value=html):
        assert client.get_models() == [{"id": "gpt-4o", "name": "gpt-4o", "provider": "openai"}]


def test_chat_json():
    client = LLMClient(api_key="k")
    replies = [
        {"choices": [{"message": {"content": '```json\n{"kind": "question"}\n```'}}]},
        {"choices": [{"message": {"content": "not json"}}]},
        {"choices": [{"message": {"content": "[1, 2]"}}]},
    ]
    with mock.patch("taskpilot.llm_client.requests.post", side_effect=[_response(payload=r) for r in replies]):
        assert client.chat_json([{"role": "user", "content": "x"}]) == {"kind": "question"}
        assert client.chat_json([{"role": "user", "content": "x"}]) == {}
        assert client.chat_json([{"role": "user", "content": "x"}]) == {"items": [1, 2]}


def test_get_models_falls_back_to_default():
    client = LLMClient(api_key="k", model="gpt-4o")
    with mock.patch("taskpilot.llm_client.requests.get", side_effect=requests.ConnectionError("down")):
        assert client.get_models() == [{"id": "gpt-4o", "name": "gpt-4o", "provider": "openai"}]
    payload = {"data": [{"id": "a"}, {"id": "b"}]}
    with mock.patch("taskpilot.llm_client.requests.get", return_value=_response(payload=payload)):
        assert [m["id"] for m in client.get_models()] == ["a", "b"]
