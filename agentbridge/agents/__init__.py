"""
Agent workers: the turn state machine and the adapters to the external agent services.

- turn_controller: ``TurnController`` runs prompts, pause, compaction and reset for one
  agent context and publishes lifecycle events on that agent's hub.
- backends: ``ClaudeAgentBackend`` (Claude Agent SDK) and ``CodexBackend`` (Codex CLI
  JSON lines) stream each turn as normalized ``AgentEvent`` chunks.
- cancellation: the cooperative cancellation token shared by both.
"""

from agentbridge.agents.backends import AgentBackend, ClaudeAgentBackend, CodexBackend
from agentbridge.agents.cancellation import CancellationToken, TurnCancelled
from agentbridge.agents.turn_controller import TurnController
