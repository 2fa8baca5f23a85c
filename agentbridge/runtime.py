"""
Construction and lifecycle of every long-lived component in the bridge.

``BridgeRuntime`` replaces module-level singletons: the HTTP app builds one runtime,
tests build as many isolated ones as they like, and the runtime is the single owner of
the upstream session, the client legs and both agent contexts.
"""

import logging
from typing import Any, Dict, Optional

from agentbridge.agents.backends import AgentBackend, ClaudeAgentBackend, CodexBackend
from agentbridge.agents.turn_controller import TurnController
from agentbridge.bot.realtime_session import TransportFactory, UpstreamSessionManager
from agentbridge.bot.transports import create_transport
from agentbridge.config.constants import (
    AGENT_CLAUDE,
    AGENT_CODEX,
    HUB_CLAUDE,
    HUB_CODEX,
    HUB_CONNECTION,
    HUB_TRANSCRIPT,
    LOGGER_NAME,
    TOOL_RUN_CLAUDE,
    TOOL_RUN_CODEX,
)
from agentbridge.config.settings import Settings
from agentbridge.config.verbosity import VerbositySettings
from agentbridge.services.client_registry import ClientConnectionRegistry, LegFactory
from agentbridge.services.event_hub import EventHub
from agentbridge.services.event_stream import EventStream
from agentbridge.services.storage import ContextMemory, ConversationStore
from agentbridge.services.webrtc_leg import WebRTCClientLeg

logger = logging.getLogger(LOGGER_NAME)

CODEX_TOOL_DESCRIPTION = (
    "Run Codex AI assistant (OpenAI) to analyze code, search files, read documentation, "
    "or perform quick coding tasks. Use for simple code analysis and quick file searches."
)
CLAUDE_TOOL_DESCRIPTION = (
    "Run Claude Code AI assistant (Anthropic) for complex multi-step coding tasks, "
    "refactoring, deep code analysis, or when the user explicitly asks for Claude."
)


class BridgeRuntime:
    """
    Wires hubs, agents, the upstream session and the client registry together.

    Args:
        settings: Application settings
        codex_backend: Overrides the Codex CLI backend (tests inject fakes here)
        claude_backend: Overrides the Claude Agent SDK backend
        transport_factory: Overrides how the upstream transport is built
        leg_factory: Overrides how client legs are built
    """

    def __init__(
        self,
        settings: Settings,
        codex_backend: Optional[AgentBackend] = None,
        claude_backend: Optional[AgentBackend] = None,
        transport_factory: TransportFactory = create_transport,
        leg_factory: LegFactory = WebRTCClientLeg,
    ):
        self.settings = settings

        self.codex_hub = EventHub(HUB_CODEX)
        self.claude_hub = EventHub(HUB_CLAUDE)
        self.transcript_hub = EventHub(HUB_TRANSCRIPT)
        self.connection_hub = EventHub(HUB_CONNECTION)
        self.verbosity = VerbositySettings(settings.show_inner_thoughts)

        self.conversations = ConversationStore(settings.data_dir)
        self.memory = ContextMemory(settings.data_dir / "CONTEXT_MEMORY.md")

        codex_backend = codex_backend or CodexBackend(settings.codex_command, settings.workspace_dir)
        claude_backend = claude_backend or ClaudeAgentBackend(
            settings.workspace_dir,
            model=settings.claude_model,
            max_turns=settings.claude_max_turns,
            cli_path=settings.claude_cli_path,
        )
        self.agents: Dict[str, TurnController] = {
            AGENT_CODEX: TurnController(AGENT_CODEX, codex_backend, self.codex_hub, chunk_event_type="thread_event"),
            AGENT_CLAUDE: TurnController(AGENT_CLAUDE, claude_backend, self.claude_hub, chunk_event_type="message"),
        }

        self.session = UpstreamSessionManager(
            settings,
            self.transcript_hub,
            self.connection_hub,
            conversations=self.conversations,
            memory=self.memory,
            transport_factory=transport_factory,
        )
        self.session.register_agent(TOOL_RUN_CODEX, self.agents[AGENT_CODEX], CODEX_TOOL_DESCRIPTION)
        self.session.register_agent(TOOL_RUN_CLAUDE, self.agents[AGENT_CLAUDE], CLAUDE_TOOL_DESCRIPTION)

        self.registry = ClientConnectionRegistry(self.session, self.connection_hub, leg_factory=leg_factory)
        self.events = EventStream(
            [self.codex_hub, self.claude_hub, self.transcript_hub, self.connection_hub, self.verbosity.changes],
            self.verbosity,
        )

    def agent(self, name: str) -> Optional[TurnController]:
        return self.agents.get(name)

    async def start_services(self) -> Dict[str, Any]:
        """Open the upstream session (or join the creation already in flight)."""
        await self.session.get_or_create_session()
        logger.info("All services started successfully")
        return {"status": "ok", "message": "All services started", "openaiConnected": True}

    async def stop_services(self) -> Dict[str, Any]:
        """Drop every client leg, close the upstream session and reset both agents."""
        count = await self.registry.drop_all()
        logger.info(f"Disconnected {count} client connection(s)")
        await self.session.close_session()
        for controller in self.agents.values():
            await controller.reset()
        logger.info("All services stopped successfully")
        return {
            "status": "ok",
            "message": "All services stopped",
            "openaiConnected": False,
            "disconnectedConnections": count,
        }

    def session_status(self) -> Dict[str, Any]:
        return {
            "openaiConnected": self.session.is_open,
            "openaiConnecting": self.session.is_connecting,
            "frontendCount": self.registry.connection_count(),
            "frontendIds": self.registry.connection_ids(),
            "upstream": self.session.status(),
        }

    async def shutdown(self) -> None:
        logger.info("Shutting down bridge runtime")
        await self.stop_services()
