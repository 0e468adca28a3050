"""Explicit backend adapter registry constructed once at startup."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from agent_bridge.config import Settings
from agent_bridge.engine.plan_tools import ToolSpec
from agent_bridge.streaming.ask_user import AskUserBridge
from agent_bridge.streaming.base import BackendAdapter
from agent_bridge.streaming.json_lines import CodexAdapter, DroidAdapter
from agent_bridge.streaming.sdk_session import ClientFactory, CopilotAdapter
from agent_bridge.streaming.text_stream import AmpAdapter, CursorAdapter

logger = logging.getLogger(__name__)


class UnknownBackendError(LookupError):
    """Requested backend id is not registered."""

    def __init__(self, backend_id: str) -> None:
        super().__init__(f"Unknown backend: {backend_id}")
        self.backend_id = backend_id


class AdapterRegistry:
    """Maps backend ids to adapters; adapters keep their own live handles."""

    def __init__(self, adapters: Sequence[BackendAdapter] = ()) -> None:
        self._adapters: dict[str, BackendAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BackendAdapter) -> None:
        if adapter.id in self._adapters:
            logger.info("Replacing registered backend %s", adapter.id)
        self._adapters[adapter.id] = adapter

    def get(self, backend_id: str) -> BackendAdapter | None:
        return self._adapters.get(backend_id)

    def require(self, backend_id: str) -> BackendAdapter:
        adapter = self._adapters.get(backend_id)
        if adapter is None:
            raise UnknownBackendError(backend_id)
        return adapter

    def adapters(self) -> list[BackendAdapter]:
        return list(self._adapters.values())

    def ids(self) -> list[str]:
        return list(self._adapters)

    async def is_available(self, backend_id: str) -> bool:
        adapter = self._adapters.get(backend_id)
        if adapter is None:
            return False
        return await adapter.is_available()

    async def available_ids(self) -> list[str]:
        return [adapter.id for adapter in self._adapters.values() if await adapter.is_available()]


def build_default_registry(
    settings: Settings,
    *,
    ask_user: AskUserBridge | None = None,
    plan_tools: Sequence[ToolSpec] = (),
    copilot_client_factory: ClientFactory | None = None,
) -> AdapterRegistry:
    """Amp, Cursor, Droid, Codex and Copilot adapters from configuration."""

    backends = settings.backends
    grace = settings.stream.kill_grace_seconds
    models = backends.models
    return AdapterRegistry(
        [
            AmpAdapter(
                command=backends.command_argv("amp"),
                kill_grace_seconds=grace,
                default_model=models.get("amp"),
                api_key=backends.amp_api_key,
            ),
            CursorAdapter(
                command=backends.command_argv("cursor"),
                kill_grace_seconds=grace,
                default_model=models.get("cursor"),
            ),
            DroidAdapter(
                command=backends.command_argv("droid"),
                kill_grace_seconds=grace,
                default_model=models.get("droid"),
            ),
            CodexAdapter(
                command=backends.command_argv("codex"),
                kill_grace_seconds=grace,
                default_model=models.get("codex"),
            ),
            CopilotAdapter(
                cli_path=backends.copilot_cli_path,
                inactivity_timeout_seconds=settings.stream.inactivity_timeout_seconds,
                default_model=models.get("copilot"),
                plan_tools=plan_tools,
                ask_user=ask_user,
                client_factory=copilot_client_factory,
            ),
        ],
    )
