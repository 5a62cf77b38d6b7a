from __future__ import annotations

import asyncio
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agenthost.api.model import InstanceConfig, Screenshot
from agenthost.config import OrgoDefaults
from agenthost.core.exceptions import (
    InstanceNotFoundError,
    InstanceNotReadyError,
    PlanLimitError,
    ProviderTimeoutError,
    ScreenshotTooLargeError,
    TerminalProviderError,
    TransientProviderError,
)
from agenthost.infra.http import HttpError
from agenthost.providers.orgo import OrgoAdapter
from agenthost.providers.orgo.adapter import MAX_SCREENSHOT_BYTES, classify, parse_screenshot

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

TOKEN = "orgo-key"
STATE = web.AppKey("state", dict)


def make_app() -> web.Application:
    """Minimal Orgo API: projects, computers, bash execution and screenshots."""
    state: dict[str, Any] = {"projects": [], "computers": {}, "project_posts": 0}

    def authorized(request: web.Request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {TOKEN}"

    async def list_projects(request: web.Request) -> web.Response:
        if not authorized(request):
            return web.Response(status=401, text="invalid api key")
        return web.json_response({"projects": state["projects"]})

    async def create_project(request: web.Request) -> web.Response:
        body = await request.json()
        state["project_posts"] += 1
        project = {"id": f"p-{len(state['projects']) + 1}", "name": body["name"]}
        state["projects"].append(project)
        return web.json_response(project)

    async def create_computer(request: web.Request) -> web.Response:
        body = await request.json()
        if body["ram"] > 8:
            return web.Response(status=403, text="Your plan allows up to 8GB RAM")
        computer = {
            "id": f"c-{len(state['computers']) + 1}",
            "name": body["name"],
            "status": "running",
            "ram": body["ram"],
            "cpu": body["cpu"],
            "project_id": body["project_id"],
            "url": "https://orgo.example/c",
        }
        state["computers"][computer["id"]] = computer
        return web.json_response(computer)

    async def get_computer(request: web.Request) -> web.Response:
        computer = state["computers"].get(request.match_info["cid"])
        if computer is None:
            return web.Response(status=404, text="not found")
        return web.json_response(computer)

    async def delete_computer(request: web.Request) -> web.Response:
        if state["computers"].pop(request.match_info["cid"], None) is None:
            return web.Response(status=404, text="not found")
        return web.Response(status=204)

    async def project_computers(request: web.Request) -> web.Response:
        pid = request.match_info["pid"]
        return web.json_response(
            {"computers": [c for c in state["computers"].values() if c["project_id"] == pid]}
        )

    async def bash(request: web.Request) -> web.Response:
        body = await request.json()
        if body["command"] == "false":
            return web.json_response({"output": "", "success": False})
        return web.json_response({"output": f"ran: {body['command']}", "exit_code": 0})

    async def screenshot(request: web.Request) -> web.Response:
        match request.match_info["cid"]:
            case "c-png":
                return web.Response(body=b"\x89PNG", content_type="image/png")
            case "c-url":
                return web.json_response({"image": "https://cdn.orgo.example/shot.png"})
            case "c-data":
                return web.json_response({"image": "data:image/png;base64,aGVsbG8="})
            case "c-boot":
                return web.Response(status=502, text="bad gateway")
            case "c-slow":
                await asyncio.sleep(1)
                return web.json_response({"image": "aGVsbG8="})
        return web.Response(status=404, text="not found")

    app = web.Application()
    app[STATE] = state
    app.router.add_get("/projects", list_projects)
    app.router.add_post("/projects", create_project)
    app.router.add_post("/computers", create_computer)
    app.router.add_get("/computers/{cid}", get_computer)
    app.router.add_delete("/computers/{cid}", delete_computer)
    app.router.add_get("/projects/{pid}/computers", project_computers)
    app.router.add_post("/computers/{cid}/bash", bash)
    app.router.add_get("/computers/{cid}/screenshot", screenshot)
    return app


@pytest.fixture
async def server():
    srv = TestServer(make_app())
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.fixture
async def adapter(server: TestServer):
    orgo = OrgoAdapter(TOKEN, OrgoDefaults(base_url=f"http://{server.host}:{server.port}"))
    yield orgo
    await orgo.close()


def config(name: str = "keen-wolf", ram: int = 4, cpu: int = 2) -> InstanceConfig:
    return InstanceConfig(name=name, size=f"{ram}GB/{cpu}cpu", options={"ram": ram, "cpu": cpu})


class TestComputers:
    async def test_create_inside_project(self, adapter: OrgoAdapter, server: TestServer) -> None:
        instance, secret = await adapter.create_instance(config())

        assert instance.id == "c-1"
        assert instance.status == "running"
        assert instance.size == "4GB/2cpu"
        assert instance.specific["project_id"] == "p-1"
        assert secret.ssh_private_key is None

    async def test_project_is_created_once(
        self, adapter: OrgoAdapter, server: TestServer
    ) -> None:
        await adapter.create_instance(config("a"))
        await adapter.create_instance(config("b"))

        assert server.app[STATE]["project_posts"] == 1

    async def test_get_and_find(self, adapter: OrgoAdapter) -> None:
        created, _ = await adapter.create_instance(config("findme"))

        assert (await adapter.get_instance(created.id)).name == "findme"
        found = await adapter.find_instance("findme")
        assert found is not None and found.id == created.id
        assert await adapter.find_instance("missing") is None

    async def test_unknown_computer(self, adapter: OrgoAdapter) -> None:
        with pytest.raises(InstanceNotFoundError):
            await adapter.get_instance("c-404")

    async def test_delete(self, adapter: OrgoAdapter) -> None:
        created, _ = await adapter.create_instance(config())

        await adapter.delete_instance(created.id)

        with pytest.raises(InstanceNotFoundError):
            await adapter.get_instance(created.id)

    async def test_plan_limit(self, adapter: OrgoAdapter) -> None:
        with pytest.raises(PlanLimitError, match="plan allows"):
            await adapter.create_instance(config(ram=32))


class TestCommands:
    async def test_run_remote_command(self, adapter: OrgoAdapter) -> None:
        result = await adapter.run_remote_command("c-1", 'echo "ready"')
        assert result.ok
        assert result.output == 'ran: echo "ready"'

    async def test_success_flag_maps_to_exit_code(self, adapter: OrgoAdapter) -> None:
        result = await adapter.run_remote_command("c-1", "false")
        assert result.exit_code == 1


class TestScreenshots:
    async def test_image_body_is_base64_encoded(self, adapter: OrgoAdapter) -> None:
        shot = await adapter.screenshot("c-png")
        assert shot == Screenshot(image="iVBORw==")

    async def test_json_url(self, adapter: OrgoAdapter) -> None:
        shot = await adapter.screenshot("c-url")
        assert shot.to_dict() == {"imageUrl": "https://cdn.orgo.example/shot.png"}

    async def test_data_url_prefix_is_stripped(self, adapter: OrgoAdapter) -> None:
        assert (await adapter.screenshot("c-data")).image == "aGVsbG8="

    async def test_bad_gateway_means_not_ready(self, adapter: OrgoAdapter) -> None:
        with pytest.raises(InstanceNotReadyError, match="not ready yet"):
            await adapter.screenshot("c-boot")

    async def test_unknown_computer(self, adapter: OrgoAdapter) -> None:
        with pytest.raises(InstanceNotFoundError, match="may have been deleted"):
            await adapter.screenshot("c-404")

    async def test_timeout(self, adapter: OrgoAdapter) -> None:
        with pytest.raises(ProviderTimeoutError, match="timed out"):
            await adapter.screenshot("c-slow", timeout=0.05)


class TestParseScreenshot:
    def test_bare_base64_in_json(self) -> None:
        assert parse_screenshot(b'{"data": "aGVsbG8="}', "application/json").image == "aGVsbG8="

    def test_json_without_image(self) -> None:
        with pytest.raises(TerminalProviderError, match="No image data"):
            parse_screenshot(b'{"status": "ok"}', "application/json")

    def test_invalid_json(self) -> None:
        with pytest.raises(TerminalProviderError, match="Invalid JSON"):
            parse_screenshot(b"{not json", "application/json")

    def test_oversized_image(self) -> None:
        with pytest.raises(ScreenshotTooLargeError):
            parse_screenshot(b"x" * (MAX_SCREENSHOT_BYTES + 1), "image/png")

    def test_base64_text_body(self) -> None:
        assert parse_screenshot(b"aGVsbG8=\n", "text/plain").image == "aGVsbG8="

    def test_unknown_content(self) -> None:
        with pytest.raises(TerminalProviderError, match="Unexpected screenshot content type"):
            parse_screenshot(b"<html></html>", "text/html")


class TestCredentials:
    async def test_valid(self, adapter: OrgoAdapter) -> None:
        await adapter.validate_credentials()

    async def test_rejected(self, server: TestServer) -> None:
        bad = OrgoAdapter("wrong", OrgoDefaults(base_url=f"http://{server.host}:{server.port}"))
        try:
            with pytest.raises(TerminalProviderError, match="rejected the API key"):
                await bad.validate_credentials()
        finally:
            await bad.close()


class TestClassify:
    @pytest.mark.parametrize("status", [0, 429, 502, 503, 504])
    def test_transient(self, status: int) -> None:
        assert isinstance(classify(HttpError(status, "busy")), TransientProviderError)

    def test_plan_limit_on_payment_required(self) -> None:
        err = classify(HttpError(402, "Upgrade to Pro for more computers"))
        assert isinstance(err, PlanLimitError)

    def test_other_client_errors_are_terminal(self) -> None:
        err = classify(HttpError(422, "bad name"))
        assert isinstance(err, TerminalProviderError)
        assert not isinstance(err, PlanLimitError)
