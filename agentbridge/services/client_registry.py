"""
Registry of client legs attached to the shared upstream session.

Legs are admitted only while the upstream session is open; they never open a session
of their own. Each admitted leg registers one audio listener on the session manager
and forwards its microphone audio into the session's single outbound path. Explicit
disconnects and terminal connection states converge on the same idempotent cleanup.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set

from agentbridge.bot.realtime_session import UpstreamSessionManager
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.exceptions import AdmissionRefusedError, SignalingError
from agentbridge.services.event_hub import EventHub
from agentbridge.services.webrtc_leg import WebRTCClientLeg

logger = logging.getLogger(LOGGER_NAME)

LegFactory = Callable[..., Any]


@dataclass
class LegAdmission:
    answer: str
    connection_id: str


@dataclass
class _LegEntry:
    leg: Any
    unsubscribe: Callable[[], None]


class ClientConnectionRegistry:
    """
    Owns every client leg.

    Args:
        session: The upstream session manager legs relay audio through
        connection_hub: Hub receiving ``leg_connected``/``leg_disconnected``
        leg_factory: Builds a leg from ``(leg_id, on_local_audio, on_terminal)``
    """

    def __init__(
        self,
        session: UpstreamSessionManager,
        connection_hub: EventHub,
        leg_factory: LegFactory = WebRTCClientLeg,
    ):
        self.session = session
        self.connection_hub = connection_hub
        self.leg_factory = leg_factory
        self._legs: Dict[str, _LegEntry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.cleanups = 0

    def connection_count(self) -> int:
        return len(self._legs)

    def connection_ids(self) -> List[str]:
        return list(self._legs.keys())

    async def admit_offer(self, offer_sdp: str) -> LegAdmission:
        """
        Create a leg for a client offer and return its answer.

        Raises:
            ValueError: If the offer is missing or not a string
            AdmissionRefusedError: If the upstream session is not open
            SignalingError: If the offer could not be negotiated
        """
        if not isinstance(offer_sdp, str) or not offer_sdp.strip():
            raise ValueError("Missing offer")
        if not self.session.is_open:
            logger.info("Refusing client offer: upstream session is not open")
            raise AdmissionRefusedError("Services not started. Please start services first.")

        leg_id = secrets.token_hex(8)
        logger.info(f"New connection: {leg_id}")
        leg = self.leg_factory(leg_id, self.session.send_local_audio, self._on_terminal)
        unsubscribe = self.session.add_audio_listener(leg_id, leg.deliver)
        # Stored before negotiating so a terminal state reported mid-negotiation finds it
        self._legs[leg_id] = _LegEntry(leg=leg, unsubscribe=unsubscribe)

        try:
            answer = await leg.negotiate(offer_sdp)
        except Exception as e:
            logger.error(f"[{leg_id}] Failed to negotiate client offer: {e}", exc_info=True)
            await self.drop_leg(leg_id, announce=False)
            raise SignalingError(f"Failed to establish WebRTC bridge: {e}") from e

        if leg_id not in self._legs:
            raise SignalingError("Client connection closed during negotiation")

        logger.info(f"Connection {leg_id} ready (total: {len(self._legs)})")
        self.connection_hub.publish("leg_connected", {"connection_id": leg_id, "count": len(self._legs)})
        return LegAdmission(answer=answer, connection_id=leg_id)

    async def drop_leg(self, leg_id: str, announce: bool = True) -> Dict[str, str]:
        """
        Remove a leg. Safe to call any number of times, from any path.

        Returns:
            dict: ``{"status": "disconnected"}`` or ``{"status": "not_found"}``
        """
        # Popped before any await so racing callers cannot both clean up
        entry = self._legs.pop(leg_id, None)
        if entry is None:
            return {"status": "not_found"}

        self.cleanups += 1
        entry.unsubscribe()
        try:
            await entry.leg.close()
        except Exception as e:
            logger.error(f"[{leg_id}] Error during cleanup: {e}", exc_info=True)

        logger.info(f"Disconnected {leg_id} (remaining: {len(self._legs)})")
        if announce:
            self.connection_hub.publish(
                "leg_disconnected", {"connection_id": leg_id, "count": len(self._legs)}
            )
        return {"status": "disconnected"}

    async def drop_all(self) -> int:
        """Drop every leg and report how many were removed."""
        leg_ids = self.connection_ids()
        logger.info(f"Disconnecting all {len(leg_ids)} client connection(s)")
        count = 0
        for leg_id in leg_ids:
            result = await self.drop_leg(leg_id)
            if result["status"] == "disconnected":
                count += 1
        return count

    def _on_terminal(self, leg_id: str, state: str) -> None:
        if leg_id not in self._legs:
            return
        logger.info(f"[{leg_id}] Transport reported {state}, dropping leg")
        task = asyncio.ensure_future(self.drop_leg(leg_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
