"""Engine configuration.

Every setting can be passed directly to the dataclasses or picked up from
the environment through ``get_chat_config()`` (call ``load_env()`` first to
read a ``.env`` file).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from parley.utils import _parse_bool

DEFAULT_RETRY_DELAYS_SECS = (1.0, 3.0, 5.0)


@dataclass(frozen=True)
class AgentConfig:
    # 0 disables the timer.
    join_timeout_secs: float = 0.0
    availability_timeout_secs: float = 5.0
    end_chat_timeout_secs: float = 5.0
    send_warning_secs: float = 3.0
    send_error_secs: float = 20.0
    bot_return_delay_secs: float = 1.5
    skip_connect_agent_card: bool = False


@dataclass(frozen=True)
class HTTPTransportConfig:
    url: str
    username: str = "parley"
    password: str | None = None
    connect_timeout_secs: float = 10.0
    max_buffer_bytes: int = 16 * 1024 * 1024


@dataclass(frozen=True)
class XMPPAgentConfig:
    jid: str
    password: str
    agent_jid: str
    server: str | None = None
    port: int = 5222
    connect_timeout_secs: float = 10.0


@dataclass(frozen=True)
class ChatConfig:
    message_timeout_secs: float = 150.0
    loading_indicator_delay_secs: float = 4.0
    retry_delays_secs: tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECS
    # Caller-supplied transports are not retried unless they opt in.
    allow_retry: bool = False
    skip_welcome: bool = False
    home_screen_enabled: bool = False
    debug: bool = False
    agent: AgentConfig = field(default_factory=AgentConfig)
    http: HTTPTransportConfig | None = None
    xmpp: XMPPAgentConfig | None = None


def load_env(env_path: Path | None = None) -> None:
    """Load a .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path.cwd() / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return float(raw)


def _parse_delays(raw: str | None) -> tuple[float, ...]:
    if not raw or not raw.strip():
        return DEFAULT_RETRY_DELAYS_SECS
    return tuple(float(part) for part in raw.split(",") if part.strip())


def get_agent_config() -> AgentConfig:
    return AgentConfig(
        join_timeout_secs=_float_env("PARLEY_AGENT_JOIN_TIMEOUT_SECS", 0.0),
        availability_timeout_secs=_float_env("PARLEY_AGENT_AVAILABILITY_TIMEOUT_SECS", 5.0),
        end_chat_timeout_secs=_float_env("PARLEY_AGENT_END_CHAT_TIMEOUT_SECS", 5.0),
        send_warning_secs=_float_env("PARLEY_AGENT_SEND_WARNING_SECS", 3.0),
        send_error_secs=_float_env("PARLEY_AGENT_SEND_ERROR_SECS", 20.0),
        bot_return_delay_secs=_float_env("PARLEY_AGENT_BOT_RETURN_DELAY_SECS", 1.5),
        skip_connect_agent_card=_parse_bool(os.getenv("PARLEY_SKIP_CONNECT_AGENT_CARD")),
    )


def get_http_config() -> HTTPTransportConfig | None:
    url = (os.getenv("PARLEY_HTTP_URL") or "").strip()
    if not url:
        return None
    return HTTPTransportConfig(
        url=url.rstrip("/"),
        username=os.getenv("PARLEY_HTTP_USERNAME", "parley"),
        password=os.getenv("PARLEY_HTTP_PASSWORD") or None,
        connect_timeout_secs=_float_env("PARLEY_HTTP_CONNECT_TIMEOUT_SECS", 10.0),
        max_buffer_bytes=int(os.getenv("PARLEY_HTTP_MAX_BUFFER_BYTES", str(16 * 1024 * 1024))),
    )


def get_xmpp_config() -> XMPPAgentConfig | None:
    jid = (os.getenv("PARLEY_XMPP_JID") or "").strip()
    agent_jid = (os.getenv("PARLEY_XMPP_AGENT_JID") or "").strip()
    if not jid or not agent_jid:
        return None
    return XMPPAgentConfig(
        jid=jid,
        password=os.getenv("PARLEY_XMPP_PASSWORD", ""),
        agent_jid=agent_jid,
        server=(os.getenv("PARLEY_XMPP_SERVER") or "").strip() or None,
        port=int(os.getenv("PARLEY_XMPP_PORT", "5222")),
        connect_timeout_secs=_float_env("PARLEY_XMPP_CONNECT_TIMEOUT_SECS", 10.0),
    )


def get_chat_config() -> ChatConfig:
    return ChatConfig(
        message_timeout_secs=_float_env("PARLEY_MESSAGE_TIMEOUT_SECS", 150.0),
        loading_indicator_delay_secs=_float_env("PARLEY_LOADING_INDICATOR_DELAY_SECS", 4.0),
        retry_delays_secs=_parse_delays(os.getenv("PARLEY_RETRY_DELAYS")),
        allow_retry=_parse_bool(os.getenv("PARLEY_ALLOW_RETRY")),
        skip_welcome=_parse_bool(os.getenv("PARLEY_SKIP_WELCOME")),
        home_screen_enabled=_parse_bool(os.getenv("PARLEY_HOME_SCREEN")),
        debug=_parse_bool(os.getenv("PARLEY_DEBUG")),
        agent=get_agent_config(),
        http=get_http_config(),
        xmpp=get_xmpp_config(),
    )
