"""HTTP surface for AgentHostService.

JSON in, JSON out, plus one Server-Sent Events stream for terminal output.
Caller identity arrives in the ``X-User-Id`` header; authenticating it is
the job of whatever sits in front of this server.
"""

from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any

from aiohttp import web
from loguru import logger

from agenthost.core.exceptions import (
    BillingRequiredError,
    ChannelConnectionError,
    ChannelTimeoutError,
    ConfigurationError,
    InstanceNotFoundError,
    InstanceNotReadyError,
    InvalidTransitionError,
    PlanLimitError,
    ProviderTimeoutError,
    ScreenshotTooLargeError,
    SessionNotFoundError,
    SessionOwnershipError,
    SetupConflictError,
    TerminalProviderError,
    TransientProviderError,
    UnsupportedProviderError,
)
from agenthost.service import AgentHostService

log = logger.bind(component="http")

USER_HEADER = "X-User-Id"


def error_response(exc: Exception) -> web.Response:
    """Map a service exception to its status code and JSON error body."""
    body: dict[str, Any] = {"error": str(exc)}
    match exc:
        case SessionOwnershipError():
            status = 401
        case BillingRequiredError():
            status = 402
            body["errorMessage"] = exc.error_message
        case PlanLimitError():
            status = 400
            body["needsUpgrade"] = True
        case InstanceNotFoundError() | SessionNotFoundError():
            status = 404
        case SetupConflictError() | InvalidTransitionError():
            status = 409
        case UnsupportedProviderError():
            status = 501
        case InstanceNotReadyError():
            status = 503
        case ChannelTimeoutError() | ProviderTimeoutError():
            status = 504
        case ScreenshotTooLargeError():
            status = 413
        case TransientProviderError() | ChannelConnectionError():
            status = 502
        case ConfigurationError() | TerminalProviderError():
            status = 400
        case _:
            status = 500
            body["error"] = "Internal server error"
    return web.json_response(body, status=status)


@web.middleware
async def errors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        response = error_response(e)
        if response.status >= 500:
            log.opt(exception=e).error("{method} {path} failed", method=request.method,
                                       path=request.path)
        else:
            log.info("{method} {path} -> {status}: {error}", method=request.method,
                     path=request.path, status=response.status, error=e)
        return response


def _user_id(request: web.Request) -> str:
    if user_id := request.headers.get(USER_HEADER):
        return user_id
    raise web.HTTPUnauthorized(
        text=json.dumps({"error": "Unauthorized"}), content_type="application/json"
    )


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except json.JSONDecodeError as e:
        raise ConfigurationError("Request body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise ConfigurationError("Request body must be a JSON object")
    return payload


def _required(body: dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not body.get(k)]
    if missing:
        raise ConfigurationError(f"Missing required field(s): {', '.join(missing)}")


def _dimension(value: Any, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid terminal dimension: {value!r}") from e


def create_app(service: AgentHostService) -> web.Application:
    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def list_vms(request: web.Request) -> web.Response:
        return web.json_response({"vms": await service.list_instances(_user_id(request))})

    async def create_vm(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        _required(body, "name", "provider")
        vm = await service.create_instance(
            user_id, body["name"], body["provider"], body.get("providerConfig") or {}
        )
        return web.json_response({"instance": vm}, status=201)

    async def delete_vm(request: web.Request) -> web.Response:
        await service.delete_instance(_user_id(request), request.match_info["vm_id"])
        return web.json_response({"success": True})

    # -------------------------------------------------------------------------
    # Credentials and setup
    # -------------------------------------------------------------------------

    async def store_credentials(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        credentials = body.get("credentials")
        if not isinstance(credentials, dict):
            raise ConfigurationError("credentials must be an object")
        await service.store_credentials(
            user_id,
            request.match_info["provider"],
            credentials,
            validate=bool(body.get("validate")),
            preferences=body.get("preferences"),
        )
        return web.json_response({"success": True})

    async def start_setup(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        _required(body, "credentialKey")
        started = await service.start_setup(
            user_id,
            body["credentialKey"],
            messaging_token=body.get("messagingToken"),
            messaging_user_id=body.get("messagingUserId"),
            instance_id=body.get("instanceId"),
            provider=body.get("provider"),
        )
        return web.json_response(started)

    async def setup_status(request: web.Request) -> web.Response:
        return web.json_response(await service.get_setup_status(_user_id(request)))

    async def setup_screenshot(request: web.Request) -> web.Response:
        shot = await service.get_screenshot(_user_id(request), request.query.get("vmId"))
        return web.json_response(shot)

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    async def terminal_connect(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        session_id = await service.terminal_connect(
            user_id,
            _dimension(body.get("cols"), 80),
            _dimension(body.get("rows"), 24),
            body.get("instanceId"),
        )
        return web.json_response({"sessionId": session_id})

    async def terminal_stream(request: web.Request) -> web.StreamResponse:
        user_id = _user_id(request)
        session_id = request.query.get("sessionId")
        if not session_id:
            raise ConfigurationError("Missing required field(s): sessionId")

        # ownership and existence are checked before any byte is sent
        messages = service.terminal_stream(user_id, session_id)

        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )
        await response.prepare(request)
        async with aclosing(messages):
            try:
                async for message in messages:
                    await response.write(f"data: {message}\n\n".encode())
            except ConnectionResetError:
                log.debug("Stream client for {session} went away", session=session_id)
        return response

    async def terminal_input(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        _required(body, "sessionId")
        await service.terminal_input(user_id, body["sessionId"], str(body.get("data", "")))
        return web.json_response({"success": True})

    async def terminal_resize(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        _required(body, "sessionId", "cols", "rows")
        service.terminal_resize(
            user_id,
            body["sessionId"],
            _dimension(body["cols"], 80),
            _dimension(body["rows"], 24),
        )
        return web.json_response({"success": True})

    async def terminal_disconnect(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _body(request)
        _required(body, "sessionId")
        await service.terminal_disconnect(user_id, body["sessionId"])
        return web.json_response({"success": True})

    async def health(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ready"})

    async def close_service(_app: web.Application) -> None:
        await service.close()

    app = web.Application(middlewares=[errors_middleware])
    app.router.add_get("/api/vms", list_vms)
    app.router.add_post("/api/vms", create_vm)
    app.router.add_delete("/api/vms/{vm_id}", delete_vm)
    app.router.add_post("/api/credentials/{provider}", store_credentials)
    app.router.add_post("/api/setup/start", start_setup)
    app.router.add_get("/api/setup/status", setup_status)
    app.router.add_get("/api/setup/screenshot", setup_screenshot)
    app.router.add_post("/api/terminal/connect", terminal_connect)
    app.router.add_get("/api/terminal/stream", terminal_stream)
    app.router.add_post("/api/terminal/input", terminal_input)
    app.router.add_post("/api/terminal/resize", terminal_resize)
    app.router.add_post("/api/terminal/disconnect", terminal_disconnect)
    app.router.add_get("/health", health)
    app.on_cleanup.append(close_service)
    return app
