"""Human-agent hand-off."""

from parley.core.agent.callback import AgentCallback
from parley.core.agent.channel import AgentChannel

__all__ = ["AgentCallback", "AgentChannel"]
