"""Orgo REST adapter.

Computers belong to a project, found or created by name on first use.
Commands run through the computer's ``bash`` endpoint, so no SSH is needed.
"""

from __future__ import annotations

import base64
import json
import re
from typing import Any

from loguru import logger

from agenthost.api.model import (
    Instance,
    InstanceConfig,
    InstanceSecret,
    InstanceStatus,
    Provider,
    Screenshot,
)
from agenthost.channel.base import CommandResult
from agenthost.config import OrgoDefaults
from agenthost.core.exceptions import (
    CreateUncertainError,
    InstanceNotFoundError,
    InstanceNotReadyError,
    PlanLimitError,
    ProviderError,
    ProviderTimeoutError,
    ScreenshotTooLargeError,
    TerminalProviderError,
    TransientProviderError,
)
from agenthost.infra.http import ApiClient, HttpError
from agenthost.infra.retry import on_status_code, retry

log = logger.bind(component="orgo", provider="orgo")

_PLAN_MARKERS = ("plan allows", "requires", "upgrade")

_STATUS_MAP: dict[str, InstanceStatus] = {
    "creating": "creating",
    "starting": "starting",
    "running": "running",
    "ready": "running",
    "stopped": "stopped",
    "suspended": "stopped",
    "error": "error",
}


def classify(err: HttpError) -> ProviderError:
    text = err.message.lower()
    if err.is_timeout or err.status in (429, 502, 503):
        return TransientProviderError(str(err))
    if err.status in (400, 402, 403) and any(m in text for m in _PLAN_MARKERS):
        return PlanLimitError(err.message)
    if err.status in (401, 403):
        return TerminalProviderError(f"Orgo rejected the API key: {err.message}")
    if err.status >= 500:
        return TransientProviderError(str(err))
    return TerminalProviderError(str(err))


MAX_SCREENSHOT_BYTES = 2 * 1024 * 1024

_BASE64 = re.compile(r"^[A-Za-z0-9+/=]+$")
_DATA_URL = re.compile(r"^data:image/[a-z]+;base64,")


def parse_screenshot(raw: bytes, content_type: str) -> Screenshot:
    """Normalize the shapes the screenshot endpoint answers with.

    JSON bodies carry a URL, a data URL or bare base64 under ``image``,
    ``data`` or ``screenshot``. Image bodies are base64-encoded here.
    """
    if "json" in content_type:
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise TerminalProviderError("Invalid JSON response from screenshot API") from e
        found = payload if isinstance(payload, dict) else {}
        value = found.get("image") or found.get("data") or found.get("screenshot")
        if not isinstance(value, str):
            raise TerminalProviderError("No image data found in screenshot response")
        if value.startswith(("http://", "https://")):
            return Screenshot(image_url=value)
        if _DATA_URL.match(value):
            return Screenshot(image=_DATA_URL.sub("", value, count=1))
        if _BASE64.match(value.strip()):
            return Screenshot(image=value.strip())
        return Screenshot(image_url=value)

    if content_type.startswith("image/"):
        if len(raw) > MAX_SCREENSHOT_BYTES:
            raise ScreenshotTooLargeError("Screenshot too large. Please try again later.")
        return Screenshot(image=base64.b64encode(raw).decode("ascii"))

    text = raw.decode("utf-8", errors="replace").strip()
    if _BASE64.match(text):
        return Screenshot(image=text)
    raise TerminalProviderError(f"Unexpected screenshot content type: {content_type}")


class OrgoAdapter:
    """CloudAdapter for Orgo computers."""

    provider = Provider.ORGO

    def __init__(self, api_key: str, defaults: OrgoDefaults | None = None) -> None:
        self.defaults = defaults or OrgoDefaults()
        self._http = ApiClient(self.defaults.base_url, api_key, timeout=60)
        self._project_id: str | None = None

    @retry(on=on_status_code(0, 429, 502, 503, 504), max_attempts=3, base_delay=0.5, max_delay=4)
    async def _fetch(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._http.request(method, path, **kwargs)

    async def _call(self, method: str, path: str, *, idempotent: bool = True, **kwargs: Any) -> Any:
        """Idempotent requests are retried on throttling and gateway errors first."""
        send = self._fetch if idempotent else self._http.request
        try:
            return await send(method, path, **kwargs)
        except HttpError as e:
            if e.status == 404:
                raise InstanceNotFoundError(f"Orgo resource {path} not found") from e
            raise classify(e) from e

    async def _project(self) -> str:
        if self._project_id:
            return self._project_id
        name = self.defaults.project
        data = await self._call("GET", "/projects")
        projects = data.get("projects", data) if isinstance(data, dict) else data or []
        for project in projects:
            if project.get("name") == name:
                self._project_id = project["id"]
                return self._project_id

        log.info("Creating Orgo project {name}", name=name)
        created = await self._call("POST", "/projects", idempotent=False, body={"name": name})
        self._project_id = created["id"]
        return self._project_id

    def _to_instance(self, raw: dict[str, Any]) -> Instance:
        return Instance(
            id=str(raw["id"]),
            provider=Provider.ORGO,
            name=raw.get("name", ""),
            status=_STATUS_MAP.get(str(raw.get("status", "")).lower(), "creating"),
            size=f"{raw.get('ram', self.defaults.ram)}GB/{raw.get('cpu', self.defaults.cpu)}cpu",
            url=raw.get("url"),
            specific={"project_id": str(raw.get("project_id") or self._project_id or "")},
        )

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        project_id = await self._project()
        body = {
            "project_id": project_id,
            "name": config.name,
            "os": "linux",
            "ram": int(config.options.get("ram", self.defaults.ram)),
            "cpu": int(config.options.get("cpu", self.defaults.cpu)),
        }
        try:
            raw = await self._http.post("/computers", body)
        except HttpError as e:
            if e.is_timeout:
                raise CreateUncertainError(config.name, str(e)) from e
            raise classify(e) from e

        instance = self._to_instance(raw)
        log.info("Created computer {id} ({name})", id=instance.id, name=config.name)
        return instance, InstanceSecret()

    async def get_instance(self, instance_id: str) -> Instance:
        return self._to_instance(await self._call("GET", f"/computers/{instance_id}"))

    async def find_instance(self, name: str) -> Instance | None:
        project_id = await self._project()
        data = await self._call("GET", f"/projects/{project_id}/computers")
        computers = data.get("computers", data) if isinstance(data, dict) else data or []
        for raw in computers:
            if raw.get("name") == name:
                return self._to_instance(raw)
        return None

    async def delete_instance(self, instance_id: str) -> None:
        await self._call("DELETE", f"/computers/{instance_id}")
        log.info("Deleted computer {id}", id=instance_id)

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        data = await self._call(
            "POST",
            f"/computers/{instance_id}/bash",
            idempotent=False,
            body={"command": command},
            timeout=timeout,
        )
        data = data or {}
        output = str(data.get("output", ""))
        if "exit_code" in data:
            exit_code = int(data["exit_code"])
        else:
            exit_code = 0 if data.get("success", True) else 1
        return CommandResult(output=output, exit_code=exit_code)

    async def screenshot(self, instance_id: str, timeout: float | None = None) -> Screenshot:
        """Capture the computer's desktop.

        Raises:
            InstanceNotReadyError: The computer is still starting.
            InstanceNotFoundError: The computer no longer exists.
            ProviderTimeoutError: No answer within ``timeout``.
        """
        try:
            raw, content_type = await self._http.fetch(
                f"/computers/{instance_id}/screenshot", timeout=timeout
            )
        except HttpError as e:
            if e.status == 502:
                raise InstanceNotReadyError(
                    "VM is not ready yet. Please wait a moment and try again."
                ) from e
            if e.status == 404:
                raise InstanceNotFoundError(
                    "Computer not found - it may have been deleted"
                ) from e
            if e.is_timeout:
                raise ProviderTimeoutError(
                    "Screenshot request timed out. The VM may still be starting up."
                ) from e
            raise classify(e) from e
        return parse_screenshot(raw, content_type)

    async def validate_credentials(self) -> None:
        await self._call("GET", "/projects")

    async def close(self) -> None:
        await self._http.close()
