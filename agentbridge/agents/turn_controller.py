"""
Turn state machine shared by both agent workers.

A ``TurnController`` owns one agent context (the external session or thread identifier
and its turn counter) and runs at most one turn against it at a time. A new prompt
cancels the running turn and waits for it to resolve before its own events start.
Pause, compaction and reset go through the same single-owner discipline.

Cancellation is best-effort: a cancelled turn may still publish a trailing
``turn_aborted``/``turn_paused`` after the caller that superseded it has returned, so
every turn event carries the agent name and turn number for consumers to discard stale
ones.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agentbridge.agents.backends import AgentBackend
from agentbridge.agents.cancellation import (
    REASON_COMPACTION,
    REASON_PAUSED,
    REASON_RESET,
    REASON_SUPERSEDED,
    CancellationToken,
    TurnCancelled,
    next_or_cancel,
)
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.exceptions import AgentBackendError
from agentbridge.models.agent_events import (
    AgentEvent,
    AgentEventKind,
    AgentStatus,
    CompactResult,
    PauseResult,
    ResetResult,
    TurnResult,
)
from agentbridge.services.event_hub import EventHub

logger = logging.getLogger(LOGGER_NAME)

SUMMARY_PROMPT = (
    "Summarize our conversation so far so it can be continued in a fresh session. "
    "Include the goals, decisions, files touched, open problems and next steps. "
    "Reply with the summary only."
)

SEED_PROMPT_TEMPLATE = (
    "This session continues earlier work. Summary of the previous conversation:\n\n"
    "{summary}\n\n"
    "Acknowledge briefly and wait for the next instruction."
)


@dataclass
class _ActiveTurn:
    kind: str
    token: CancellationToken = field(default_factory=CancellationToken)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    number: int = 0


@dataclass
class _StreamOutcome:
    events: List[Dict[str, Any]] = field(default_factory=list)
    final_response: str = ""
    context_id: Optional[str] = None


class TurnController:
    """
    Runs prompts for one agent and keeps its conversational context across turns.

    Args:
        name: Agent name used in logs and event payloads (e.g. "codex")
        backend: The external agent service adapter
        hub: Hub receiving this agent's lifecycle and chunk events
        chunk_event_type: Event type used to republish raw stream chunks
    """

    def __init__(
        self,
        name: str,
        backend: AgentBackend,
        hub: EventHub,
        chunk_event_type: str = "message",
        summary_prompt: str = SUMMARY_PROMPT,
        seed_prompt_template: str = SEED_PROMPT_TEMPLATE,
    ):
        self.name = name
        self.backend = backend
        self.hub = hub
        self.chunk_event_type = chunk_event_type
        self.summary_prompt = summary_prompt
        self.seed_prompt_template = seed_prompt_template

        self._context_id: Optional[str] = None
        self._turn_count = 0
        self._summary: Optional[str] = None
        self._active: Optional[_ActiveTurn] = None

    @property
    def context_id(self) -> Optional[str]:
        return self._context_id

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def is_busy(self) -> bool:
        return self._active is not None

    def status(self) -> AgentStatus:
        return AgentStatus(
            agent=self.name,
            context_id=self._context_id,
            has_context=self._context_id is not None,
            is_busy=self.is_busy,
            turn_count=self._turn_count,
            summary=self._summary,
        )

    # Ownership

    def _begin(self, kind: str) -> Tuple[_ActiveTurn, Optional[_ActiveTurn]]:
        previous = self._active
        turn = _ActiveTurn(kind=kind)
        self._active = turn
        return turn, previous

    async def _supersede(self, previous: Optional[_ActiveTurn], reason: str) -> None:
        if previous is None or previous.finished.is_set():
            return
        logger.info(f"[{self.name}] Cancelling previous {previous.kind} before starting a new one")
        previous.token.cancel(reason)
        await previous.finished.wait()

    def _release(self, turn: _ActiveTurn) -> None:
        turn.finished.set()
        if self._active is turn:
            self._active = None

    def _publish(self, event_type: str, turn: Optional[_ActiveTurn] = None, **payload: Any) -> None:
        payload["agent"] = self.name
        if turn is not None:
            payload["turn"] = turn.number
        self.hub.publish(event_type, payload)

    # Streaming

    async def _stream(
        self,
        turn: _ActiveTurn,
        prompt: str,
        context_id: Optional[str],
        outcome: _StreamOutcome,
        adopt_context: bool,
    ) -> None:
        iterator = self.backend.stream(prompt, context_id, turn.token).__aiter__()
        try:
            while True:
                try:
                    chunk: AgentEvent = await next_or_cancel(iterator, turn.token)
                except StopAsyncIteration:
                    break

                outcome.events.append(chunk.raw)
                self._publish(self.chunk_event_type, turn, event=chunk.raw)

                if chunk.context_id and chunk.context_id != outcome.context_id:
                    outcome.context_id = chunk.context_id
                    if adopt_context and chunk.context_id != self._context_id:
                        self._context_id = chunk.context_id
                        logger.info(f"[{self.name}] Context started: {chunk.context_id}")
                        self._publish("session_started", turn, context_id=chunk.context_id)

                if chunk.kind == AgentEventKind.ERROR:
                    raise AgentBackendError(chunk.text or f"Unknown {self.name} error")
                if chunk.text:
                    outcome.final_response = chunk.text
            # A stream that ended because its process was interrupted is not a completion
            turn.token.raise_if_cancelled()
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # Operations

    async def prompt(self, text: str) -> TurnResult:
        """
        Run one turn, cancelling any turn still in flight for this agent.

        Args:
            text: The prompt sent to the agent

        Returns:
            TurnResult: ``ok`` with the final response, ``aborted`` when the turn was
            cancelled (context preserved), or ``error`` with the failure message

        Raises:
            ValueError: If ``text`` is empty
        """
        if not isinstance(text, str) or not text.strip():
            raise ValueError("prompt must be a non-empty string")

        turn, previous = self._begin("turn")
        try:
            await self._supersede(previous, REASON_SUPERSEDED)
            if turn.token.cancelled:
                logger.info(f"[{self.name}] Prompt superseded before it started")
                return TurnResult(status="aborted", agent=self.name, context_id=self._context_id)
            return await self._run_prompt(turn, text)
        finally:
            self._release(turn)

    async def _run_prompt(self, turn: _ActiveTurn, text: str) -> TurnResult:
        self._turn_count += 1
        turn.number = self._turn_count
        outcome = _StreamOutcome(context_id=self._context_id)

        logger.info(f"[{self.name}] Turn {turn.number} started, prompt length: {len(text)}")
        self._publish("turn_started", turn, context_id=self._context_id, prompt=text[:100])

        try:
            await self._stream(turn, text, self._context_id, outcome, adopt_context=True)
        except Exception as e:
            if isinstance(e, TurnCancelled) or turn.token.cancelled:
                return self._aborted(turn, outcome)
            message = str(e) or f"Unknown {self.name} error"
            logger.error(f"[{self.name}] Turn {turn.number} failed: {message}", exc_info=True)
            self._publish("turn_error", turn, message=message)
            return TurnResult(
                status="error",
                agent=self.name,
                context_id=self._context_id,
                turn=turn.number,
                final_response=outcome.final_response or None,
                events=outcome.events,
                error=message,
            )

        logger.info(
            f"[{self.name}] Turn {turn.number} completed, response length: {len(outcome.final_response)}"
        )
        self._publish("turn_completed", turn, context_id=self._context_id)
        return TurnResult(
            status="ok",
            agent=self.name,
            context_id=self._context_id,
            turn=turn.number,
            final_response=outcome.final_response,
            events=outcome.events,
        )

    def _aborted(self, turn: _ActiveTurn, outcome: _StreamOutcome) -> TurnResult:
        reason = turn.token.reason or REASON_SUPERSEDED
        logger.warning(f"[{self.name}] Turn {turn.number} aborted ({reason})")
        event_type = "turn_paused" if reason in (REASON_PAUSED, REASON_COMPACTION) else "turn_aborted"
        self._publish(event_type, turn, reason=reason)
        return TurnResult(
            status="aborted",
            agent=self.name,
            context_id=self._context_id,
            turn=turn.number,
            final_response=outcome.final_response or None,
            events=outcome.events,
        )

    async def pause(self) -> PauseResult:
        """Cancel the running turn, if any. Pausing an idle agent reports ``idle``."""
        turn = self._active
        if turn is None or turn.finished.is_set():
            return PauseResult(status="idle", agent=self.name, context_id=self._context_id)

        logger.info(f"[{self.name}] Pausing current {turn.kind}")
        turn.token.cancel(REASON_PAUSED)
        await turn.finished.wait()
        self._publish("paused", context_id=self._context_id)
        return PauseResult(status="paused", agent=self.name, context_id=self._context_id)

    async def compact(self) -> CompactResult:
        """
        Replace the context with a fresh one seeded by a summary of the old one.

        The swap is atomic: if summarising or seeding fails, or the compaction is
        cancelled, the old context and turn counter are left untouched.
        """
        old_context_id = self._context_id
        if old_context_id is None:
            return CompactResult(
                status="error", agent=self.name, error="No active context to compact"
            )

        turn, previous = self._begin("compaction")
        try:
            await self._supersede(previous, REASON_COMPACTION)
            if turn.token.cancelled or self._context_id != old_context_id:
                return CompactResult(status="aborted", agent=self.name, old_context_id=old_context_id)

            logger.info(f"[{self.name}] Compacting context {old_context_id}")
            self._publish("compact_started", context_id=old_context_id)

            try:
                summary_outcome = _StreamOutcome(context_id=old_context_id)
                await self._stream(turn, self.summary_prompt, old_context_id, summary_outcome, adopt_context=False)
                summary = summary_outcome.final_response.strip()
                if not summary:
                    return self._compact_failed(old_context_id, "Summarization produced no text")

                seed_outcome = _StreamOutcome()
                seed_prompt = self.seed_prompt_template.format(summary=summary)
                await self._stream(turn, seed_prompt, None, seed_outcome, adopt_context=False)
                new_context_id = seed_outcome.context_id
                if not new_context_id or new_context_id == old_context_id:
                    return self._compact_failed(old_context_id, "Agent did not start a new context")
            except Exception as e:
                if isinstance(e, TurnCancelled) or turn.token.cancelled:
                    logger.warning(f"[{self.name}] Compaction cancelled, keeping context {old_context_id}")
                    self._publish("compact_error", context_id=old_context_id, message="Compaction cancelled")
                    return CompactResult(status="aborted", agent=self.name, old_context_id=old_context_id)
                logger.error(f"[{self.name}] Compaction failed: {e}", exc_info=True)
                return self._compact_failed(old_context_id, str(e) or "Compaction failed")

            self._context_id = new_context_id
            self._turn_count = 1
            self._summary = summary
            logger.info(f"[{self.name}] Context compacted: {old_context_id} -> {new_context_id}")
            self._publish(
                "compact_completed",
                old_context_id=old_context_id,
                new_context_id=new_context_id,
                summary=summary,
            )
            return CompactResult(
                status="ok",
                agent=self.name,
                old_context_id=old_context_id,
                new_context_id=new_context_id,
                summary=summary,
            )
        finally:
            self._release(turn)

    def _compact_failed(self, old_context_id: str, message: str) -> CompactResult:
        logger.warning(f"[{self.name}] Compaction failed: {message}")
        self._publish("compact_error", context_id=old_context_id, message=message)
        return CompactResult(
            status="error", agent=self.name, old_context_id=old_context_id, error=message
        )

    async def reset(self) -> ResetResult:
        """Cancel any running turn and forget the context entirely."""
        turn = self._active
        if turn is not None and not turn.finished.is_set():
            turn.token.cancel(REASON_RESET)
            await turn.finished.wait()

        previous_context = self._context_id
        self._context_id = None
        self._turn_count = 0
        self._summary = None
        logger.info(f"[{self.name}] Context reset (was {previous_context})")
        self._publish("reset", previous_context_id=previous_context)
        return ResetResult(agent=self.name)
