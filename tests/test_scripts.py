from __future__ import annotations

import base64
import shlex

import pytest

from agenthost.config import AgentSettings
from agenthost.providers import scripts

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

AGENT = AgentSettings()


def messaging(user_id: str | None = "42") -> scripts.MessagingConfig:
    return scripts.MessagingConfig(
        token="123:abc",
        user_id=user_id,
        gateway_token="gw-token",
        version="2026.2.1",
        workspace="/home/agent/clawd",
    )


class TestMarkers:
    @pytest.mark.parametrize(
        ("output", "expected"),
        [
            ("PROCESS_EXISTS\n", True),
            ("  PROCESS_EXISTS  \n", True),
            ("noise\nPROCESS_EXISTS\n", True),
            ("NO_PROCESS\n", False),
            ("PROCESS_EXISTS_NOT\n", False),
            ("", False),
        ],
    )
    def test_exact_line_match(self, output: str, expected: bool) -> None:
        assert scripts.has_marker(output, scripts.PROCESS_MARKER) is expected


class TestWriteFile:
    def test_content_travels_base64_encoded(self) -> None:
        content = "it's \"quoted\" $HOME\n"
        command = scripts.write_file("~/x.txt", content, "600")

        encoded = command.split("'")[1]
        assert base64.b64decode(encoded).decode() == content
        assert command.endswith("&& chmod 600 ~/x.txt")

    def test_append(self) -> None:
        assert ">> ~/.bashrc" in scripts.write_file("~/.bashrc", "x", append=True)


class TestAgentConfig:
    def test_messaging_allowlist(self) -> None:
        config = scripts.agent_config(AGENT, messaging())

        telegram = config["channels"]["telegram"]
        assert telegram["botToken"] == "123:abc"
        assert telegram["allowFrom"] == ["42"]
        assert telegram["dmPolicy"] == "allowlist"

    def test_without_user_id_nobody_is_allowlisted(self) -> None:
        config = scripts.agent_config(AGENT, messaging(user_id=None))
        assert "allowFrom" not in config["channels"]["telegram"]

    def test_gateway_and_heartbeat(self) -> None:
        config = scripts.agent_config(AGENT, messaging())

        assert config["gateway"]["port"] == AGENT.gateway_port
        assert config["gateway"]["bind"] == "loopback"
        assert config["gateway"]["auth"] == {"mode": "token", "token": "gw-token"}
        assert config["agents"]["defaults"]["heartbeat"]["every"] == "30m"
        assert config["meta"]["lastTouchedVersion"] == "2026.2.1"

    def test_workspace_prompt_mentions_workspace(self) -> None:
        assert "/home/agent/clawd/knowledge" in scripts.workspace_prompt(
            AGENT, "/home/agent/clawd"
        )


class TestSteps:
    def test_secrets_are_shell_quoted(self) -> None:
        secret = "sk-ant'; rm -rf ~"
        name, command = scripts.store_api_key(secret)

        words = shlex.split(command)
        assert name == "Store API key"
        assert words[0] == "echo"
        assert words[2:] == [">>", "~/.bashrc"]
        assert shlex.split(words[1]) == ["export", f"ANTHROPIC_API_KEY={secret}"]

    def test_agent_install_sequence(self) -> None:
        names = [name for name, _ in scripts.agent_install(AGENT)]
        assert names == ["Install NVM", "Install Node.js 22", "Install clawdbot"]
        assert scripts.agent_install(AGENT)[-1][1].endswith("npm install -g clawdbot@latest")

    def test_tooling_install_uses_given_packages(self) -> None:
        _, command = scripts.tooling_install(scripts.ESSENTIAL_PACKAGES)[-1]
        assert command.endswith("git procps curl")

    def test_gateway_launch(self) -> None:
        launch = scripts.gateway_launch(AGENT)

        assert set(launch) == {"script", "stop", "start"}
        assert launch["start"][1].startswith(f"nohup {AGENT.startup_script}")
        assert "pkill -f 'clawdbot gateway'" in launch["stop"][1]

    def test_port_check_targets_gateway_port(self) -> None:
        _, command = scripts.gateway_port_check(AGENT)
        assert f":{AGENT.gateway_port} " in command
        assert scripts.PORT_MARKER in command

    def test_env_exports(self) -> None:
        exports = scripts.env_exports("sk", "123:abc")
        assert "export ANTHROPIC_API_KEY=sk" in exports
        assert "export TELEGRAM_BOT_TOKEN=123:abc" in exports
