"""Shell commands run on a machine during setup.

Every builder returns plain strings so providers can run them over any
channel. File contents travel base64-encoded to avoid quoting issues;
secrets are passed through ``shlex.quote``.
"""

from __future__ import annotations

import base64
import json
import shlex
from dataclasses import dataclass
from typing import Any

from agenthost.config import AgentSettings

type Step = tuple[str, str]
"""(step name, command). The name is what gets logged, never the command."""

PROCESS_MARKER = "PROCESS_EXISTS"
NO_PROCESS_MARKER = "NO_PROCESS"
PORT_MARKER = "PORT_LISTENING"
NO_PORT_MARKER = "PORT_CLOSED"

NVM_PRELUDE = 'export NVM_DIR="$HOME/.nvm" && [ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"'

TOOLING_PACKAGES = (
    "python3", "python3-pip", "python3-venv", "git", "openssh-client", "procps", "curl",
)
ESSENTIAL_PACKAGES = ("git", "procps", "curl")


def write_file(path: str, content: str, mode: str | None = None, *, append: bool = False) -> str:
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    redirect = ">>" if append else ">"
    cmd = f"echo '{encoded}' | base64 -d {redirect} {path}"
    if mode:
        cmd += f" && chmod {mode} {path}"
    return cmd


# =============================================================================
# Baseline tooling
# =============================================================================


def package_manager_prep() -> list[Step]:
    """Best-effort: let cloud-init finish and release apt locks it may hold."""
    return [
        ("Wait for cloud-init", "cloud-init status --wait > /dev/null 2>&1 || true"),
        ("Release package locks", "sudo killall apt apt-get dpkg 2>/dev/null || true"),
        (
            "Release package locks",
            "sudo rm -f /var/lib/dpkg/lock-frontend /var/lib/dpkg/lock "
            "/var/cache/apt/archives/lock 2>/dev/null || true",
        ),
        ("Repair package state", "sudo dpkg --configure -a 2>/dev/null || true"),
    ]


def tooling_install(packages: tuple[str, ...] = TOOLING_PACKAGES) -> list[Step]:
    return [
        ("Update package index", "sudo apt-get update -qq"),
        (
            "Install tooling",
            "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y -qq " + " ".join(packages),
        ),
    ]


def sdk_install(packages: tuple[str, ...]) -> Step:
    return (
        "Install SDKs",
        f"pip3 install {' '.join(shlex.quote(p) for p in packages)} --break-system-packages",
    )


# =============================================================================
# Agent
# =============================================================================


def agent_install(agent: AgentSettings) -> list[Step]:
    return [
        (
            "Install NVM",
            f"curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/{agent.nvm_version}/install.sh"
            " | bash",
        ),
        (
            f"Install Node.js {agent.node_version}",
            f"{NVM_PRELUDE} && nvm install {agent.node_version} "
            f"&& nvm alias default {agent.node_version}",
        ),
        (f"Install {agent.package}", f"{NVM_PRELUDE} && npm install -g {agent.package}@latest"),
    ]


def agent_version(agent: AgentSettings) -> Step:
    return (
        f"Read {agent.package} version",
        f"cat ~/.nvm/versions/node/*/lib/node_modules/{agent.package}/package.json 2>/dev/null"
        " | grep -o '\"version\": \"[^\"]*\"' | head -1 | cut -d'\"' -f4",
    )


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MessagingConfig:
    token: str
    user_id: str | None
    gateway_token: str
    version: str
    workspace: str


def workspace_prompt(agent: AgentSettings, workspace: str) -> str:
    return f"""# {agent.package} - Autonomous AI Assistant

You are {agent.package}, an autonomous AI assistant running on a dedicated cloud machine.

Your workspace is at {workspace}.

## Knowledge Directory Structure
- {workspace}/knowledge - Knowledge repositories and notes

## Behavior

**When receiving user messages:**
- Prioritize and execute user-requested tasks immediately
- Be helpful, proactive, and thorough

**During heartbeat (periodic check):**
1. Check {workspace}/knowledge for updates
2. Look for tasks.md, TODO.md, or any task lists
3. If you find actionable tasks, create a plan and begin execution
4. Report significant progress or findings to the user via chat
"""


def agent_config(agent: AgentSettings, messaging: MessagingConfig) -> dict[str, Any]:
    telegram: dict[str, Any] = {
        "enabled": True,
        "botToken": messaging.token,
        "dmPolicy": "allowlist",
        "groupPolicy": "allowlist",
    }
    if messaging.user_id:
        telegram["allowFrom"] = [messaging.user_id]

    return {
        "meta": {"lastTouchedVersion": messaging.version},
        "auth": {"profiles": {"anthropic:default": {"provider": "anthropic", "mode": "api_key"}}},
        "agents": {
            "defaults": {
                "workspace": messaging.workspace,
                "compaction": {"mode": "safeguard"},
                "maxConcurrent": 4,
                "heartbeat": {
                    "every": f"{agent.heartbeat_minutes}m",
                    "target": "last",
                    "activeHours": {"start": "00:00", "end": "24:00"},
                },
            }
        },
        "channels": {"telegram": telegram},
        "gateway": {
            "port": agent.gateway_port,
            "mode": "local",
            "bind": "loopback",
            "auth": {"mode": "token", "token": messaging.gateway_token},
        },
    }


def env_exports(api_key: str, messaging_token: str | None = None) -> str:
    lines = [
        "",
        "# agent environment",
        'export NVM_DIR="$HOME/.nvm"',
        '[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"',
        f"export ANTHROPIC_API_KEY={shlex.quote(api_key)}",
    ]
    if messaging_token:
        lines.append(f"export TELEGRAM_BOT_TOKEN={shlex.quote(messaging_token)}")
    return "\n".join(lines) + "\n"


def configure_messaging(
    agent: AgentSettings, messaging: MessagingConfig, api_key: str
) -> list[Step]:
    config_path = f"~/{agent.config_dir}/{agent.config_file}"
    return [
        (
            "Create agent directories",
            f"mkdir -p ~/{agent.config_dir} {shlex.quote(messaging.workspace)}/knowledge",
        ),
        (
            "Write workspace prompt",
            write_file(
                f"{shlex.quote(messaging.workspace)}/CLAUDE.md",
                workspace_prompt(agent, messaging.workspace),
            ),
        ),
        (
            "Write agent config",
            write_file(config_path, json.dumps(agent_config(agent, messaging), indent=2), "600"),
        ),
        (
            "Configure environment",
            write_file("~/.bashrc", env_exports(api_key, messaging.token), append=True),
        ),
    ]


def store_api_key(api_key: str) -> Step:
    line = f"export ANTHROPIC_API_KEY={shlex.quote(api_key)}"
    return ("Store API key", f"echo {shlex.quote(line)} >> ~/.bashrc")


# =============================================================================
# Gateway
# =============================================================================


def startup_script(agent: AgentSettings) -> str:
    log = agent.log_path
    stamp = "[$(date +'%Y-%m-%d %H:%M:%S')]"
    return f"""#!/bin/bash
source ~/.bashrc 2>/dev/null || true
export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"

LOG_FILE="{log}"
echo "{stamp} Starting {agent.package} gateway..." >> "$LOG_FILE"
echo "{stamp} Node version: $(node -v 2>&1 || echo 'node not found')" >> "$LOG_FILE"

if ! command -v {agent.package} &> /dev/null; then
    echo "{stamp} ERROR: {agent.package} command not found" >> "$LOG_FILE"
    exit 1
fi

if [ -z "$ANTHROPIC_API_KEY" ]; then
    echo "{stamp} WARNING: ANTHROPIC_API_KEY not set" >> "$LOG_FILE"
fi
if [ ! -f ~/{agent.config_dir}/{agent.config_file} ]; then
    echo "{stamp} WARNING: config file missing" >> "$LOG_FILE"
fi

{agent.package} gateway run >> "$LOG_FILE" 2>&1
EXIT_CODE=$?
echo "{stamp} Gateway exited with code: $EXIT_CODE" >> "$LOG_FILE"
exit $EXIT_CODE
"""


def gateway_launch(agent: AgentSettings) -> dict[str, Step]:
    return {
        "script": (
            "Write gateway startup script",
            write_file(agent.startup_script, startup_script(agent), "+x"),
        ),
        "stop": (
            "Stop existing gateway",
            f"pkill -f '{agent.package} gateway' 2>/dev/null || true",
        ),
        "start": (
            "Start gateway",
            f"nohup {agent.startup_script} >> {agent.log_path} 2>&1 & echo $!",
        ),
    }


def gateway_process_check(agent: AgentSettings) -> Step:
    return (
        "Check gateway process",
        f"pgrep -f '{agent.package} gateway' > /dev/null "
        f"&& echo '{PROCESS_MARKER}' || echo '{NO_PROCESS_MARKER}'",
    )


def gateway_port_check(agent: AgentSettings) -> Step:
    port = agent.gateway_port
    return (
        "Check gateway port",
        f"( netstat -tln 2>/dev/null | grep -q ':{port} ' "
        f"|| ss -tln 2>/dev/null | grep -q ':{port} ' ) "
        f"&& echo '{PORT_MARKER}' || echo '{NO_PORT_MARKER}'",
    )


def gateway_log_tail(agent: AgentSettings, lines: int = 20) -> Step:
    return ("Read gateway log", f"tail -{lines} {agent.log_path} 2>/dev/null || echo 'No log file'")


def has_marker(output: str, marker: str) -> bool:
    return any(line.strip() == marker for line in output.splitlines())
