"""
Handlers module for control-channel events from the OpenAI Realtime session.

Key components:
- control_handlers: one handler per inbound event variant (tool calls, transcripts,
  text deltas, response completion, errors) and the ``CONTROL_HANDLERS`` routing table
  the session manager dispatches through.
"""

# Handlers module initialization
