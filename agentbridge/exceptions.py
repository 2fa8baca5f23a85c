"""Exception hierarchy for the agent bridge."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """Required configuration (for example the OpenAI API key) is missing or invalid."""


class SessionSetupError(BridgeError):
    """The upstream handshake or control-channel wait failed."""


class ControlChannelError(BridgeError):
    """A control message could not be sent or a correlated response failed."""


class AdmissionRefusedError(BridgeError):
    """A client leg was offered while no upstream session is open."""


class AgentBackendError(BridgeError):
    """The external agent process failed for a reason other than cancellation."""


class SignalingError(BridgeError):
    """A client offer could not be turned into a working leg."""
