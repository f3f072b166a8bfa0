"""FastAPI app exposing sessions, snapshots and text completions.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`kiln/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
import uuid
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from kiln._version import __version__
from kiln.engine.errors import CorruptSession, EncodingError, KilnError, ModelStopped
from kiln.engine.llm import LLM, TextStream
from kiln.engine.sampler import GenerationParameters
from kiln.engine.session import Session
from kiln.engine.snapshots import SnapshotStore, compute_model_compatibility
from kiln.engine.types import GenerationResult

logger = logging.getLogger(__name__)

SNAPSHOT_DIR_ENV = "KILN_SNAPSHOT_DIR"


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, EncodingError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, CorruptSession):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ModelStopped):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def default_snapshot_dir() -> str:
    xdg_cache = os.environ.get("XDG_CACHE_HOME", os.path.join(os.path.expanduser("~"), ".cache"))
    return os.environ.get(SNAPSHOT_DIR_ENV, os.path.join(xdg_cache, "kiln", "snapshots"))


def create_app(
    *,
    llm: LLM,
    model_id: str,
    snapshot_dir: str | None = None,
) -> FastAPI:
    app = FastAPI(title="Kiln Inference Server", version=__version__)

    _sessions_lock = threading.Lock()
    _sessions: dict[str, Session] = {}

    _snapshot_store_lock = threading.Lock()
    _snapshot_store: SnapshotStore | None = None

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done and task not in done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    def _get_snapshot_store() -> SnapshotStore:
        nonlocal _snapshot_store
        with _snapshot_store_lock:
            if _snapshot_store is None:
                root_dir = snapshot_dir or default_snapshot_dir()
                fingerprint = compute_model_compatibility(backend=llm.backend, model_id=model_id)["fingerprint"]
                _snapshot_store = SnapshotStore(root_dir=root_dir, model_id=model_id, fingerprint=fingerprint)
            return _snapshot_store

    def _get_session(session_id: str) -> Session:
        with _sessions_lock:
            session = _sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return session

    def _register_session(session_id: str | None, session: Session) -> str:
        if session_id is None:
            session_id = uuid.uuid4().hex
        with _sessions_lock:
            if session_id in _sessions:
                raise HTTPException(status_code=409, detail=f"Session already exists: {session_id}")
            _sessions[session_id] = session
        return session_id

    async def _json_dict_or_empty(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception:
            return {}
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _optional_session_id(payload: dict[str, Any]) -> str | None:
        session_id = payload.get("session_id")
        if session_id is not None and (not isinstance(session_id, str) or not session_id):
            raise HTTPException(status_code=400, detail="'session_id' must be a non-empty string.")
        return session_id

    async def _num_tokens(session: Session) -> int:
        # Reading the token history waits for any running decode loop on this session.
        return len(await asyncio.to_thread(lambda: session.tokens))

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "kiln",
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Session Management
    # -------------------------------------------------------------------------

    @app.post("/v1/sessions")
    async def create_session(request: Request) -> Any:
        """Create a new empty session."""
        payload = await _json_dict_or_empty(request)
        session_id = _register_session(_optional_session_id(payload), llm.new_session())
        return JSONResponse({"status": "created", "session_id": session_id})

    @app.get("/v1/sessions")
    async def list_sessions() -> Any:
        with _sessions_lock:
            session_ids = list(_sessions.keys())
        return JSONResponse({"sessions": session_ids})

    @app.get("/v1/sessions/{session_id}")
    async def get_session_info(session_id: str) -> Any:
        session = _get_session(session_id)
        return JSONResponse({"session_id": session_id, "num_tokens": await _num_tokens(session)})

    @app.delete("/v1/sessions/{session_id}")
    async def close_session(session_id: str) -> Any:
        with _sessions_lock:
            session = _sessions.pop(session_id, None)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return JSONResponse({"status": "closed", "session_id": session_id})

    @app.post("/v1/sessions/{session_id}/duplicate")
    async def duplicate_session(session_id: str, request: Request) -> Any:
        payload = await _json_dict_or_empty(request)
        new_id = _optional_session_id(payload)
        session = _get_session(session_id)
        try:
            copy = await asyncio.to_thread(llm.duplicate_session, session)
        except Exception as exc:
            raise _http_error(exc) from exc
        new_id = _register_session(new_id, copy)
        return JSONResponse({"status": "duplicated", "session_id": new_id, "source_session_id": session_id})

    @app.post("/v1/sessions/{session_id}/feed")
    async def feed_session(session_id: str, request: Request) -> Any:
        """Advance a session over text without generating."""
        payload = await _json_dict_or_empty(request)
        text = payload.get("text")
        if not isinstance(text, str):
            raise HTTPException(status_code=400, detail="'text' is required and must be a string.")
        session = _get_session(session_id)
        try:
            await llm.feed_text(session, text)
        except Exception as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"status": "ok", "session_id": session_id, "num_tokens": await _num_tokens(session)})

    # -------------------------------------------------------------------------
    # Snapshot Management
    # -------------------------------------------------------------------------

    @app.post("/v1/sessions/{session_id}/save")
    async def save_session_snapshot(session_id: str, request: Request) -> Any:
        """Save a session to an immutable on-disk snapshot."""
        metadata = _snapshot_metadata(await _json_dict_or_empty(request))
        session = _get_session(session_id)
        try:
            data = await asyncio.to_thread(llm.save_session, session)
        except Exception as exc:
            raise _http_error(exc) from exc

        store = _get_snapshot_store()
        try:
            manifest = store.save(data, num_tokens=await _num_tokens(session), metadata=metadata)
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        return JSONResponse({"status": "saved", "snapshot_id": manifest.snapshot_id})

    @app.get("/v1/snapshots")
    async def list_snapshots() -> Any:
        store = _get_snapshot_store()
        snaps = [m.to_dict() for m in store.list_snapshots()]
        return JSONResponse({"snapshots": snaps})

    @app.get("/v1/snapshots/{snapshot_id}")
    async def get_snapshot(snapshot_id: str) -> Any:
        store = _get_snapshot_store()
        try:
            manifest = store.get(snapshot_id)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            raise _http_error(exc) from exc
        return JSONResponse(manifest.to_dict())

    @app.patch("/v1/snapshots/{snapshot_id}")
    async def patch_snapshot(snapshot_id: str, request: Request) -> Any:
        changes = _snapshot_metadata(await _json_dict_or_empty(request))
        store = _get_snapshot_store()
        try:
            manifest = store.update_metadata(snapshot_id, changes)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            raise _http_error(exc) from exc
        return JSONResponse(manifest.to_dict())

    @app.delete("/v1/snapshots/{snapshot_id}")
    async def delete_snapshot(snapshot_id: str) -> Any:
        store = _get_snapshot_store()
        try:
            store.delete(snapshot_id)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"status": "deleted", "snapshot_id": snapshot_id})

    @app.post("/v1/snapshots/{snapshot_id}/load")
    async def load_snapshot(snapshot_id: str, request: Request) -> Any:
        """Restore a snapshot into a new session."""
        payload = await _json_dict_or_empty(request)
        session_id = _optional_session_id(payload)

        store = _get_snapshot_store()
        try:
            data = store.load(snapshot_id)
            session = await asyncio.to_thread(llm.load_session, data)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            raise _http_error(exc) from exc

        session_id = _register_session(session_id, session)
        return JSONResponse(
            {
                "status": "loaded",
                "session_id": session_id,
                "snapshot_id": snapshot_id,
                "num_tokens": await _num_tokens(session),
            }
        )

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/completions")
    async def completions(request: Request) -> Any:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

        req_model = payload.get("model")
        if req_model is not None and req_model != model_id:
            raise HTTPException(status_code=404, detail=f"Unknown model: {req_model}")

        prompt, sampler, stop, max_tokens = _parse_completion_request(payload)

        session_id = payload.get("session_id")
        if session_id is not None:
            if not isinstance(session_id, str):
                raise HTTPException(status_code=400, detail="'session_id' must be a string.")
            session = _get_session(session_id)
        else:
            session = llm.new_session()

        created = int(time.time())
        cmpl_id = f"cmpl-{uuid.uuid4().hex}"

        try:
            stream = llm.stream_text(
                prompt,
                session=session,
                sampler=sampler,
                stop_on=stop,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            raise _http_error(exc) from exc

        if payload.get("stream"):
            event_iter = _stream_completions(
                stream=stream,
                model_id=model_id,
                created=created,
                cmpl_id=cmpl_id,
                request=request,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        try:
            text, result = await _run_with_disconnect_cancellation(request, _collect(stream))
        except Exception as exc:
            raise _http_error(exc) from exc

        resp: dict[str, Any] = {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "text": text, "finish_reason": result.finish_reason}],
            "usage": _usage_dict(result),
            "x_kiln_timing": _timing_dict(result),
        }
        if session_id is not None:
            resp["session_id"] = session_id
        return JSONResponse(resp)

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_dict(result: GenerationResult) -> dict[str, int]:
    return {
        "prompt_tokens": result.usage.prompt_tokens,
        "completion_tokens": result.usage.completion_tokens,
        "total_tokens": result.usage.total_tokens,
    }


def _timing_dict(result: GenerationResult) -> dict[str, float | None]:
    return {
        "prefill_s": result.timing.prefill_s,
        "decode_s": result.timing.decode_s,
        "total_s": result.timing.total_s,
        "tok_per_s": result.timing.tok_per_s,
    }


async def _collect(stream: TextStream) -> tuple[str, GenerationResult]:
    try:
        text = await stream.text()
        return text, await stream.result()
    except asyncio.CancelledError:
        stream.cancel()
        raise


async def _stream_completions(
    *,
    stream: TextStream,
    model_id: str,
    created: int,
    cmpl_id: str,
    request: Request,
) -> AsyncIterator[str]:
    def chunk(text: str, finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "text": text, "finish_reason": finish_reason}],
        }

    result: GenerationResult | None = None
    error: dict[str, Any] | None = None
    try:
        async for text in stream:
            # If the client disconnects mid-stream, stop consuming promptly.
            if await request.is_disconnected():
                logger.debug("Client disconnected; cancelling %s", cmpl_id)
                return
            yield _sse(json.dumps(chunk(text, None), ensure_ascii=False))
        result = await stream.result()
    except KilnError as exc:
        error = {"message": str(exc), "type": type(exc).__name__, "param": None, "code": None}
    except Exception as exc:
        logger.exception("Streaming completion failed: %s", exc)
        error = {"message": str(exc), "type": "server_error", "param": None, "code": None}
    finally:
        # No-op once generation has finished; abandons it on disconnect or close.
        stream.cancel()

    if error is not None:
        yield _sse(json.dumps({"error": error}, ensure_ascii=False))
    else:
        terminal = chunk("", result.finish_reason)
        terminal["usage"] = _usage_dict(result)
        terminal["x_kiln_timing"] = _timing_dict(result)
        yield _sse(json.dumps(terminal, ensure_ascii=False))
    yield "data: [DONE]\n\n"


def _parse_completion_request(payload: dict[str, Any]) -> tuple[str, GenerationParameters, str | None, int | None]:
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt:
        raise HTTPException(status_code=400, detail="'prompt' is required and must be a non-empty string.")

    stop = payload.get("stop")
    if isinstance(stop, list):
        if len(stop) > 1:
            raise HTTPException(status_code=400, detail="Only one stop phrase is supported.")
        stop = stop[0] if stop else None
    if stop is not None and not isinstance(stop, str):
        raise HTTPException(status_code=400, detail="'stop' must be a string.")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.")
        if max_tokens < 0:
            raise HTTPException(status_code=400, detail="'max_tokens' must be >= 0.")

    kwargs: dict[str, Any] = {}
    for name, kind in (
        ("temperature", float),
        ("top_p", float),
        ("top_k", int),
        ("repetition_penalty", float),
        ("seed", int),
    ):
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a number.")
        if kind is int and not isinstance(value, int):
            raise HTTPException(status_code=400, detail=f"'{name}' must be an integer.")
        kwargs[name] = kind(value)

    try:
        sampler = GenerationParameters(**kwargs)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return prompt, sampler, stop or None, max_tokens


def _snapshot_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    """Pick the user-editable snapshot fields present in `payload`."""
    metadata: dict[str, Any] = {}
    for key in ("title", "description"):
        value = payload.get(key)
        if value is not None:
            if not isinstance(value, str):
                raise HTTPException(status_code=400, detail=f"'{key}' must be a string.")
            metadata[key] = value
    tags = payload.get("tags")
    if tags is not None:
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise HTTPException(status_code=400, detail="'tags' must be a list of strings.")
        metadata["tags"] = list(tags)
    return metadata
