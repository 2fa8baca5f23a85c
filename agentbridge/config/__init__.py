"""
Configuration module for the agent bridge application.

Key components:
- constants: application-wide constants (logger name, realtime defaults, tool names,
  audio rates and handshake timeouts).
- settings: the environment-driven ``Settings`` model, loaded after ``.env``.
- logging_config: console and rotating-file logging for the named application logger.
- verbosity: the essential/detailed classification applied to the outbound event stream.

Usage examples:
```python
from agentbridge.config.constants import LOGGER_NAME
from agentbridge.config.logging_config import configure_logging
from agentbridge.config.settings import Settings

logger = configure_logging()
settings = Settings.from_env()
```
"""

# Config module initialization
