from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from codeforge.client import OllamaClient
from codeforge.controller import GenerationController
from codeforge.errors import GenerationTimeoutError, ProtocolError, TransportError
from codeforge.models import GenerationRequest, GenerationState


def _jsonl(*payloads: dict) -> bytes:
    return "".join(json.dumps(payload) + "\n" for payload in payloads).encode("utf-8")


def _request(config, raw_input: str = "a counter app") -> GenerationRequest:
    return GenerationRequest.from_config(raw_input, "react", config)


class _StallingStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b'{"response": "<div>", "done": false}\n'
        await asyncio.sleep(5)
        yield b'{"response": "", "done": true}\n'


@pytest.mark.asyncio
async def test_generate_given_json_lines_when_streamed_then_fragments_are_ordered_and_final_carries_count(
    model_config,
) -> None:
    # Given
    body = _jsonl(
        {"response": "Hello, ", "done": False},
        {"response": "", "done": False},
        {"response": "world!", "done": False},
        {"response": "", "done": True, "eval_count": 7},
    )
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    fragments = []
    progress = []

    # When
    await client.generate(
        _request(model_config),
        model_config,
        on_fragment=fragments.append,
        on_progress=progress.append,
    )

    # Then
    assert [f.content for f in fragments] == ["Hello, ", "world!", ""]
    assert [f.index for f in fragments] == [0, 1, 2]
    assert [f.is_final for f in fragments] == [False, False, True]
    assert fragments[-1].token_count == 7
    assert progress[0].phase == "queued"
    assert progress[0].message == "Connecting to codellama:test"
    assert progress[-1].phase == "finalizing"
    assert progress[-1].tokens_generated == 7


@pytest.mark.asyncio
async def test_generate_given_request_when_posted_then_payload_carries_prompt_and_sampling_options(
    model_config,
) -> None:
    # Given
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=_jsonl({"response": "x", "done": True}))

    config = model_config.with_updates(temperature=0.2, top_k=20)
    client = OllamaClient(transport=httpx.MockTransport(handler))

    # When
    await client.generate(_request(config, "https://example.com"), config, on_fragment=lambda fragment: None)

    # Then
    request = seen[0]
    payload = json.loads(request.content)
    assert request.method == "POST"
    assert str(request.url) == "http://ollama.test/api/generate"
    assert payload["model"] == "codellama:test"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 100
    assert payload["options"]["num_predict"] == 100
    assert payload["options"]["top_k"] == 20
    assert payload["prompt"].startswith("Recreate the user interface of the website at https://example.com")
    assert "Framework: react" in payload["prompt"]
    assert "React" in payload["system"]


@pytest.mark.asyncio
async def test_generate_given_stream_disabled_when_response_arrives_then_single_final_fragment(model_config) -> None:
    # Given
    config = model_config.with_updates(stream=False)
    body = json.dumps({"response": "const App = () => null;", "done": True, "eval_count": 5}).encode()
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    fragments = []

    # When
    await client.generate(_request(config), config, on_fragment=fragments.append)

    # Then
    assert len(fragments) == 1
    assert fragments[0].content == "const App = () => null;"
    assert fragments[0].is_final is True
    assert fragments[0].index == 0
    assert fragments[0].token_count == 5


@pytest.mark.asyncio
async def test_generate_given_non_2xx_status_when_posted_then_transport_error_with_status(model_config) -> None:
    # Given
    client = OllamaClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(404, text='{"error":"model not found"}'))
    )

    # When
    with pytest.raises(TransportError) as exc_info:
        await client.generate(_request(model_config), model_config, on_fragment=lambda fragment: None)

    # Then
    assert exc_info.value.status_code == 404
    assert "HTTP 404" in str(exc_info.value)


@pytest.mark.asyncio
async def test_generate_given_malformed_line_when_streamed_then_protocol_error_after_good_fragments(
    model_config,
) -> None:
    # Given
    body = _jsonl({"response": "ok", "done": False}) + b"not json at all\n"
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    fragments = []

    # When
    with pytest.raises(ProtocolError):
        await client.generate(_request(model_config), model_config, on_fragment=fragments.append)

    # Then
    assert [f.content for f in fragments] == ["ok"]


@pytest.mark.asyncio
async def test_generate_given_error_payload_when_streamed_then_transport_error(model_config) -> None:
    # Given
    body = _jsonl({"error": "out of memory"})
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))

    # When / Then
    with pytest.raises(TransportError, match="out of memory"):
        await client.generate(_request(model_config), model_config, on_fragment=lambda fragment: None)


@pytest.mark.asyncio
async def test_generate_given_unreachable_endpoint_when_posted_then_transport_error(model_config) -> None:
    # Given
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OllamaClient(transport=httpx.MockTransport(handler))

    # When / Then
    with pytest.raises(TransportError, match="unreachable"):
        await client.generate(_request(model_config), model_config, on_fragment=lambda fragment: None)


@pytest.mark.asyncio
async def test_generate_given_read_timeout_when_posted_then_generation_timeout_error(model_config) -> None:
    # Given
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = OllamaClient(transport=httpx.MockTransport(handler))

    # When
    with pytest.raises(GenerationTimeoutError) as exc_info:
        await client.generate(_request(model_config), model_config, on_fragment=lambda fragment: None)

    # Then
    assert exc_info.value.timeout_ms == model_config.timeout_ms


@pytest.mark.asyncio
async def test_generate_given_stalled_stream_when_inactive_then_timeout_after_partial_fragments(model_config) -> None:
    # Given
    config = model_config.with_updates(timeout_ms=50)
    client = OllamaClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=_StallingStream()))
    )
    fragments = []

    # When
    with pytest.raises(GenerationTimeoutError):
        await client.generate(_request(config), config, on_fragment=fragments.append)

    # Then
    assert [f.content for f in fragments] == ["<div>"]


@pytest.mark.asyncio
async def test_list_models_given_tags_response_when_called_then_model_names_returned(model_config) -> None:
    # Given
    body = {"models": [{"name": "codellama:7b"}, {"name": "qwen2.5-coder:7b"}]}
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))

    # When
    names = await client.list_models(model_config)

    # Then
    assert names == ["codellama:7b", "qwen2.5-coder:7b"]


@pytest.mark.asyncio
async def test_controller_given_http_stream_when_submitted_then_artifact_is_built_from_fenced_output(
    model_config,
    repository,
) -> None:
    # Given
    body = _jsonl(
        {"response": "```tsx\n", "done": False},
        {"response": "export default function Counter() {\n  return <button>0</button>;\n}\n", "done": False},
        {"response": "```", "done": False},
        {"response": "", "done": True, "eval_count": 18},
    )
    client = OllamaClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    controller = GenerationController(client, repository=repository, config=model_config)

    # When
    result = await controller.submit("a counter")

    # Then
    assert result.state is GenerationState.COMPLETED
    assert result.artifact.code.startswith("export default function Counter()")
    assert result.artifact.token_count == 18
    assert repository.get(result.artifact.id) is not None
