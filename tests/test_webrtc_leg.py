"""
Unit tests for the WebRTC client leg.

The peer connection is real; its state properties are patched so the state change
handlers can be driven without a remote peer.
"""

from unittest.mock import MagicMock, PropertyMock, patch

import pytest
import pytest_asyncio
from aiortc import RTCPeerConnection

from agentbridge.services.webrtc_leg import WebRTCClientLeg
from conftest import make_frame


@pytest.fixture
def terminal_calls():
    return []


@pytest_asyncio.fixture
async def leg(terminal_calls):
    leg = WebRTCClientLeg("leg-1", MagicMock(), lambda leg_id, state: terminal_calls.append((leg_id, state)))
    yield leg
    await leg.close()


def patch_state(name, value):
    return patch.object(RTCPeerConnection, name, new_callable=PropertyMock, return_value=value)


class TestStateChanges:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["failed", "disconnected"])
    async def test_ice_failure_reports_terminal(self, leg, terminal_calls, state):
        with patch_state("iceConnectionState", state):
            await leg._on_ice_state()

        assert terminal_calls == [("leg-1", f"ice-{state}")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["checking", "connected", "completed"])
    async def test_healthy_ice_states_ignored(self, leg, terminal_calls, state):
        with patch_state("iceConnectionState", state):
            await leg._on_ice_state()

        assert terminal_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["failed", "disconnected", "closed"])
    async def test_connection_terminal_states_reported(self, leg, terminal_calls, state):
        with patch_state("connectionState", state):
            await leg._on_connection_state()

        assert terminal_calls == [("leg-1", state)]

    @pytest.mark.asyncio
    async def test_connected_state_ignored(self, leg, terminal_calls):
        with patch_state("connectionState", "connected"):
            await leg._on_connection_state()

        assert terminal_calls == []

    @pytest.mark.asyncio
    async def test_no_reports_after_close(self, leg, terminal_calls):
        await leg.close()

        with patch_state("iceConnectionState", "failed"), patch_state("connectionState", "closed"):
            await leg._on_ice_state()
            await leg._on_connection_state()

        assert terminal_calls == []


class TestMedia:
    @pytest.mark.asyncio
    async def test_deliver_queues_for_playback(self, leg):
        leg.deliver(make_frame(1))
        leg.deliver(make_frame(2))

        assert leg.outbound_track.queued == 2
        assert leg.dropped_frames == 0

    @pytest.mark.asyncio
    async def test_non_audio_track_is_stopped(self, leg):
        track = MagicMock(kind="video")

        leg._on_track(track)

        track.stop.assert_called_once()
        assert leg._pump_task is None

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, leg):
        await leg.close()
        await leg.close()

        leg.deliver(make_frame(1))
        assert leg.outbound_track.queued == 0
