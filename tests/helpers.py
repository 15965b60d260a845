"""Test doubles and small async helpers shared by the test modules."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from parley.config import AgentConfig, ChatConfig
from parley.core.models import MessageResponse, ResponseType
from parley.engine import ChatEngine


def fast_config(*, agent: AgentConfig | None = None, **overrides: Any) -> ChatConfig:
    """A config with short timers so tests never wait on production delays."""
    agent = agent or AgentConfig(
        availability_timeout_secs=0.2,
        end_chat_timeout_secs=0.2,
        send_warning_secs=5.0,
        send_error_secs=10.0,
        bot_return_delay_secs=0.0,
    )
    values: dict[str, Any] = {
        "message_timeout_secs": 5.0,
        "loading_indicator_delay_secs": 60.0,
        "retry_delays_secs": (0.0, 0.0),
        "agent": agent,
    }
    values.update(overrides)
    return ChatConfig(**values)


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def transcript_texts(engine: ChatEngine) -> list[str | None]:
    return [item.item.get("text") for item in engine.state.transcript()]


def all_texts(engine: ChatEngine) -> list[str]:
    """Text of every stored message, hidden ones included."""
    out: list[str] = []
    for message_id in engine.state.message_ids:
        message = engine.state.messages_by_id[message_id]
        if isinstance(message, MessageResponse):
            out.extend(str(item.get("text")) for item in message.items if item.get("text"))
        else:
            out.append(message.text)
    return out


def find_request(engine: ChatEngine, text: str):
    for message in engine.state.messages_by_id.values():
        if getattr(message, "text", None) == text and hasattr(message, "input"):
            return message
    raise AssertionError(f"no request with text {text!r}")


class RecordingTransport:
    """Answers every request through ``messaging.add_message``.

    ``gate`` holds each call until set; ``errors`` are raised one per call.
    """

    allow_retry = False

    def __init__(self, *, reply: bool = True):
        self.reply = reply
        self.requests: list = []
        self.signals: list[asyncio.Event] = []
        self.errors: list[BaseException] = []
        self.gate: asyncio.Event | None = None

    @property
    def texts(self) -> list[str]:
        return [r.text for r in self.requests]

    async def __call__(self, request, *, signal: asyncio.Event, instance: Any) -> None:
        self.requests.append(request)
        self.signals.append(signal)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        if not self.reply:
            return
        reply = "Welcome" if request.text == "" else f"You said: {request.text}"
        await instance.messaging.add_message(
            {
                "output": {"generic": [{"response_type": ResponseType.TEXT.value, "text": reply}]},
                "request_id": request.id,
            }
        )


class FakeAgentProvider:
    def __init__(self, callback, *, online: Any = True):
        self.callback = callback
        self.online = online
        self.calls: list[tuple] = []
        self.start_error: BaseException | None = None
        self.send_error: BaseException | None = None
        self.end_gate: asyncio.Event | None = None
        self.send_gate: asyncio.Event | None = None
        self.online_gate: asyncio.Event | None = None

    @property
    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def get_name(self) -> str:
        return "fake"

    async def start_chat(self, message, *, pre_start_chat_payload=None) -> None:
        self.calls.append(("start_chat", message.id, pre_start_chat_payload))
        if self.start_error is not None:
            raise self.start_error

    async def end_chat(self, *, ended_by_agent: bool, pre_end_chat_payload=None) -> None:
        self.calls.append(("end_chat", ended_by_agent, pre_end_chat_payload))
        if self.end_gate is not None:
            await self.end_gate.wait()

    async def send_message_to_agent(self, message, message_id: str, *, files=()) -> None:
        self.calls.append(("send_message_to_agent", message.text, tuple(f.id for f in files)))
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error

    async def are_any_agents_online(self, message):
        if self.online_gate is not None:
            await self.online_gate.wait()
        if isinstance(self.online, BaseException):
            raise self.online
        return self.online

    async def user_typing(self, is_typing: bool) -> None:
        self.calls.append(("user_typing", is_typing))

    async def user_read_messages(self) -> None:
        self.calls.append(("user_read_messages",))


class ReconnectingAgentProvider(FakeAgentProvider):
    def __init__(self, callback, *, reconnect_result: bool = True, **kwargs: Any):
        super().__init__(callback, **kwargs)
        self.reconnect_result = reconnect_result

    async def reconnect(self) -> bool:
        self.calls.append(("reconnect",))
        return self.reconnect_result


class ProviderFactory:
    """``AgentProviderFactory`` that remembers what it built."""

    def __init__(self, cls=FakeAgentProvider, **kwargs: Any):
        self.cls = cls
        self.kwargs = kwargs
        self.built: list[FakeAgentProvider] = []

    @property
    def provider(self) -> FakeAgentProvider:
        return self.built[-1]

    def __call__(self, *, callback, instance=None, persisted_state=None):
        provider = self.cls(callback, **self.kwargs)
        self.built.append(provider)
        return provider


class MemoryPersistence:
    def __init__(self, data: dict | None = None):
        self.data = data
        self.saves = 0

    def load(self):
        return self.data

    def save(self, data) -> None:
        self.saves += 1
        self.data = dict(data)
