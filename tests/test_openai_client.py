import asyncio
import json
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as LocalServer

from core.embedders import OpenAIEmbedder
from core.errors import ClassificationError, EmbeddingServiceError, VisualAnalysisError
from core.models.domain import AtlasPosition, Bounds
from core.services import OpenAIVisionClient, extract_json_object

POSITIONS = {
    "A1": AtlasPosition("img-1", Path("a.jpg"), Bounds(10, 10, 300, 300)),
    "A2": AtlasPosition("img-2", Path("b.jpg"), Bounds(320, 10, 300, 300)),
}


def chat_reply(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


async def serve(routes, scenario):
    """Run ``scenario(base_url)`` against a throwaway aiohttp server."""

    app = web.Application()
    for path, handler in routes.items():
        app.router.add_post(path, handler)
    server = LocalServer(app)
    await server.start_server()
    try:
        return await scenario(str(server.make_url("/v1")))
    finally:
        await server.close()


def test_extract_json_object_handles_fences_and_prose():
    assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json_object('Sure! {"a": {"b": 2}} Hope that helps.') == {"a": {"b": 2}}
    with pytest.raises(json.JSONDecodeError):
        extract_json_object("no json here")


def test_vision_analysis_maps_positions_and_skips_unknown_cells():
    seen = {}

    async def handler(request):
        body = await request.json()
        seen["auth"] = request.headers.get("Authorization")
        seen["url"] = body["messages"][0]["content"][1]["image_url"]["url"]
        content = json.dumps(
            {
                "results": [
                    {"position": "a1", "description": "dog", "tags": ["pet"], "suitability_score": 0.9},
                    {"position": "C3", "description": "ghost", "suitability_score": 0.1},
                ]
            }
        )
        return web.json_response(chat_reply(content))

    async def scenario(base_url):
        async with OpenAIVisionClient(base_url=base_url, api_key="secret") as client:
            return await client.analyze(b"jpeg-bytes", POSITIONS, "dogs", reference_url="https://cdn/atlas.jpg")

    result = asyncio.run(serve({"/v1/chat/completions": handler}, scenario))

    assert set(result) == {"A1"}
    assert result["A1"].tags == ["pet"]
    assert seen["auth"] == "Bearer secret"
    assert seen["url"] == "https://cdn/atlas.jpg"


def test_inline_image_is_sent_as_data_url():
    seen = {}

    async def handler(request):
        body = await request.json()
        seen["url"] = body["messages"][0]["content"][1]["image_url"]["url"]
        return web.json_response(chat_reply('{"results": []}'))

    async def scenario(base_url):
        async with OpenAIVisionClient(base_url=base_url) as client:
            return await client.analyze(b"\xff\xd8", POSITIONS, "dogs")

    assert asyncio.run(serve({"/v1/chat/completions": handler}, scenario)) == {}
    assert seen["url"].startswith("data:image/jpeg;base64,")


def test_unparseable_vision_reply_is_a_service_error():
    async def handler(request):
        return web.json_response(chat_reply("I cannot see the image."))

    async def scenario(base_url):
        async with OpenAIVisionClient(base_url=base_url) as client:
            await client.analyze(b"x", POSITIONS, "dogs")

    with pytest.raises(VisualAnalysisError):
        asyncio.run(serve({"/v1/chat/completions": handler}, scenario))


def test_server_errors_are_retried():
    attempts = []

    async def handler(request):
        attempts.append(1)
        if len(attempts) == 1:
            return web.json_response({"error": "busy"}, status=503)
        return web.json_response(chat_reply('{"sortType": "scene"}'))

    async def scenario(base_url):
        async with OpenAIVisionClient(base_url=base_url, max_retries=2) as client:
            return await client.complete("classify")

    assert asyncio.run(serve({"/v1/chat/completions": handler}, scenario)) == '{"sortType": "scene"}'
    assert len(attempts) == 2


def test_client_errors_fail_without_retry():
    attempts = []

    async def handler(request):
        attempts.append(1)
        return web.json_response({"error": "bad key"}, status=401)

    async def scenario(base_url):
        async with OpenAIVisionClient(base_url=base_url, max_retries=3) as client:
            await client.complete("classify")

    with pytest.raises(ClassificationError):
        asyncio.run(serve({"/v1/chat/completions": handler}, scenario))
    assert len(attempts) == 1


def test_embeddings_are_returned_in_input_order():
    async def handler(request):
        body = await request.json()
        rows = [{"index": index, "embedding": [float(index)] * body["dimensions"]} for index in range(len(body["input"]))]
        return web.json_response({"data": list(reversed(rows))})

    async def scenario(base_url):
        async with OpenAIEmbedder(dim=3, base_url=base_url) as embedder:
            return await embedder.embed_text_batch(["first", "second"])

    vectors = asyncio.run(serve({"/v1/embeddings": handler}, scenario))
    assert vectors == [[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]]


def test_wrong_embedding_dimensions_are_rejected():
    async def handler(request):
        return web.json_response({"data": [{"index": 0, "embedding": [0.1, 0.2]}]})

    async def scenario(base_url):
        async with OpenAIEmbedder(dim=3, base_url=base_url) as embedder:
            await embedder.embed_text("hello")

    with pytest.raises(EmbeddingServiceError):
        asyncio.run(serve({"/v1/embeddings": handler}, scenario))
