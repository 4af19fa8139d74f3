"""HTTP route handlers for the Step chat proxy."""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Union

from aiohttp import ClientError
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from .chat import ChatService, pick_token
from .exceptions import ProxyError
from .schemas import ChatCompletionsRequest, ModelsList, TokenCheckRequest, TokenCheckResponse
from .transcode import DONE_MARKER

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}

MODELS_PAYLOAD = ModelsList(
    data=[
        {"id": "step-v1", "object": "model", "owned_by": "step-free-api"},
        {"id": "step-v1-vision", "object": "model", "owned_by": "step-free-api"},
    ]
)


def _coerce_json_object_from_bytes(raw: bytes) -> dict[str, Any]:
    """Parse request body bytes into a JSON object.

    Raises:
        ValueError: If body is empty
        TypeError: If parsed result is not a JSON object (dict)
        json.JSONDecodeError: If JSON parsing fails
    """
    if not raw or raw.strip() == b"":
        raise ValueError("Empty request body")
    first = json.loads(raw.decode("utf-8", errors="replace"))
    if not isinstance(first, dict):
        raise TypeError("Request body must be a JSON object")
    return first


def _error_json(status: int, message: str, err_type: str, code: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": {"message": message, "type": err_type, "code": code}},
        headers=CORS_HEADERS,
    )


def _error_stream(model: str, message: str) -> AsyncIterator[str]:
    err = {
        "id": f"chatcmpl-{uuid.uuid4()}",
        "model": model,
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"content": f"Error: {message}"}, "finish_reason": "stop"}],
        "created": int(time.time()),
    }

    async def _err() -> AsyncIterator[str]:
        yield f"data: {json.dumps(err, ensure_ascii=False)}\n\n"
        yield DONE_MARKER

    return _err()


def _service(request: Request) -> ChatService:
    return request.app.state.chat_service


def _refresh_key(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if not auth:
        return None
    return pick_token(auth)


@router.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "service": "step-proxy"})


@router.get("/models", response_model=None)
@router.get("/v1/models", response_model=None)
async def models(_: Request) -> JSONResponse:
    return JSONResponse(content=MODELS_PAYLOAD.model_dump(), headers=CORS_HEADERS)


@router.post("/chat/completions", response_model=None)
@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Union[JSONResponse, StreamingResponse]:
    try:
        payload = ChatCompletionsRequest(**_coerce_json_object_from_bytes(await request.body()))
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON: %s", e)
        return _error_json(422, f"Invalid JSON: {e.msg} at pos {e.pos}", "invalid_request_error")
    except ValidationError as e:
        logger.error("Invalid request body: %s", e)
        return _error_json(422, str(e), "invalid_request_error")
    except (TypeError, ValueError) as e:
        logger.error("Invalid request body: %s", e)
        return _error_json(422, str(e), "invalid_request_error")

    refresh_key = _refresh_key(request)
    if not refresh_key:
        return _error_json(401, "Missing Authorization", "authentication_error")

    model = payload.model or "step"
    service = _service(request)

    if payload.stream:
        try:
            stream = await service.create_completion_stream(payload.messages, refresh_key, model)
        except ProxyError as exc:
            logger.error("Streaming setup failed: %s", exc)
            stream = _error_stream(model, exc.message)
        except (asyncio.TimeoutError, ClientError) as exc:
            logger.error("Streaming setup failed: %s", exc)
            stream = _error_stream(model, f"Streaming error: {exc}")
        return StreamingResponse(
            stream,
            media_type="text/event-stream",
            headers=CORS_HEADERS,
            background=BackgroundTask(stream.aclose),
        )

    try:
        result = await service.create_completion(payload.messages, refresh_key, model)
    except ProxyError as exc:
        logger.error("Completion failed: %s", exc)
        return _error_json(exc.http_status, exc.message, exc.code, exc.code)
    except (asyncio.TimeoutError, ClientError) as exc:
        logger.error("Completion failed: %s", exc)
        return _error_json(502, f"Upstream error: {exc!r}", "upstream_error")
    return JSONResponse(content=result.model_dump(), headers=CORS_HEADERS)


@router.post("/token/check", response_model=None)
async def token_check(body: TokenCheckRequest, request: Request) -> JSONResponse:
    live = await _service(request).check_token(body.token)
    return JSONResponse(content=TokenCheckResponse(live=live).model_dump(), headers=CORS_HEADERS)
