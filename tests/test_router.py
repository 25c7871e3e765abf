import subprocess
from typing import Any

import pytest

from vibe_flow.router import Channel
from vibe_flow.router import ChannelRouter
from vibe_flow.sessions import SessionManager
from vibe_flow.terminal import FakePtySpawner
from vibe_flow.terminal import TerminalSize


class Outbox:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> None:
        self.events.append(payload)


async def _drain(channel: Channel) -> None:
    channel.close()
    await channel.pump()


def _channel(name: str) -> tuple[Channel, Outbox]:
    outbox = Outbox()
    return Channel(outbox.send, name=name), outbox


@pytest.fixture()
def router(session_manager: SessionManager) -> ChannelRouter:
    return ChannelRouter(session_manager)


@pytest.mark.asyncio
async def test_create_registers_owner_and_acknowledges(
    router: ChannelRouter, session_manager: SessionManager, spawner: FakePtySpawner
) -> None:
    channel, outbox = _channel("viewer")

    await router.handle(channel, {"type": "create", "sessionKey": "default", "cols": 120, "rows": 40})
    await _drain(channel)

    assert outbox.events == [{"type": "created", "sessionKey": "default"}]
    assert router.owner_of("default") is channel
    assert spawner.last.size == TerminalSize(120, 40)
    assert "default" in session_manager


@pytest.mark.asyncio
async def test_create_without_dimensions_uses_defaults(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, _outbox = _channel("viewer")

    await router.handle(channel, {"type": "create"})

    assert spawner.last.size == TerminalSize(80, 30)


@pytest.mark.asyncio
async def test_output_reaches_owner_in_order(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    for chunk in (b"a", b"b", b"c"):
        spawner.last.emit(chunk)
    await _drain(channel)

    data = [event["data"] for event in outbox.events if event["type"] == "data"]
    assert data == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_split_multibyte_output_is_reassembled(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})
    encoded = "héllo".encode("utf-8")

    spawner.last.emit(encoded[:2])
    spawner.last.emit(encoded[2:])
    await _drain(channel)

    text = "".join(event["data"] for event in outbox.events if event["type"] == "data")
    assert text == "héllo"


@pytest.mark.asyncio
async def test_input_from_owner_is_forwarded(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, _outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    await router.handle(channel, {"type": "input", "data": "echo ü\r"})

    assert bytes(spawner.last.written) == "echo ü\r".encode("utf-8")


@pytest.mark.asyncio
async def test_input_from_other_connection_is_rejected(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    owner, _owner_box = _channel("owner")
    intruder, intruder_box = _channel("intruder")
    await router.handle(owner, {"type": "create"})

    await router.handle(intruder, {"type": "input", "data": "rm -rf ~\r"})
    await router.handle(intruder, {"type": "resize", "cols": 10, "rows": 10})
    await _drain(intruder)

    assert bytes(spawner.last.written) == b""
    assert spawner.last.resizes == []
    assert [event["type"] for event in intruder_box.events] == ["error", "error"]


@pytest.mark.asyncio
async def test_attach_moves_ownership_without_respawn(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    first, first_box = _channel("first")
    second, second_box = _channel("second")
    await router.handle(first, {"type": "create", "sessionKey": "default"})

    await router.handle(second, {"type": "attach", "sessionKey": "default"})
    spawner.last.emit(b"after attach")
    await _drain(first)
    await _drain(second)

    assert len(spawner.processes) == 1
    assert router.owner_of("default") is second
    assert [event["type"] for event in first_box.events] == ["created"]
    assert second_box.events == [
        {"type": "attached", "sessionKey": "default"},
        {"type": "data", "sessionKey": "default", "data": "after attach"},
    ]


@pytest.mark.asyncio
async def test_attach_to_unknown_session_fails(router: ChannelRouter) -> None:
    channel, outbox = _channel("viewer")

    await router.handle(channel, {"type": "attach", "sessionKey": "ghost"})
    await _drain(channel)

    assert outbox.events[0]["type"] == "error"
    assert outbox.events[0]["sessionKey"] == "ghost"
    assert router.owner_of("ghost") is None


@pytest.mark.asyncio
async def test_resize_requires_both_dimensions(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    await router.handle(channel, {"type": "resize", "cols": 100})
    await router.handle(channel, {"type": "resize", "cols": 100, "rows": 50})
    await _drain(channel)

    assert [event["type"] for event in outbox.events] == ["created", "error"]
    assert spawner.last.resizes == [TerminalSize(100, 50)]


@pytest.mark.asyncio
async def test_invalid_envelope_yields_error_event(router: ChannelRouter) -> None:
    channel, outbox = _channel("viewer")

    await router.handle(channel, {"type": "explode", "sessionKey": "t1"})
    await router.handle(channel, ["not", "a", "dict"])
    await router.handle(channel, {"type": "create", "cols": -1})
    await _drain(channel)

    assert [event["type"] for event in outbox.events] == ["error", "error", "error"]
    assert outbox.events[0]["sessionKey"] == "t1"
    assert outbox.events[1]["sessionKey"] == "default"


@pytest.mark.asyncio
async def test_create_failure_is_reported_on_the_channel(
    router: ChannelRouter, session_manager: SessionManager, configured_store, tmp_path
) -> None:
    configured_store.update_settings(repo_root=tmp_path / "missing")
    session_manager._home = tmp_path / "missing-home"
    channel, outbox = _channel("viewer")

    await router.handle(channel, {"type": "create"})
    await _drain(channel)

    assert outbox.events[0]["type"] == "error"
    assert "Directory not accessible" in outbox.events[0]["message"]


@pytest.mark.asyncio
async def test_destroy_kills_and_unregisters(router: ChannelRouter, session_manager: SessionManager, spawner: FakePtySpawner) -> None:
    channel, _outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    await router.handle(channel, {"type": "destroy"})

    assert spawner.last.killed is True
    assert "default" not in session_manager
    assert router.owner_of("default") is None


@pytest.mark.asyncio
async def test_disconnect_keeps_sessions_running(router: ChannelRouter, session_manager: SessionManager, spawner: FakePtySpawner) -> None:
    channel, _outbox = _channel("viewer")
    await router.handle(channel, {"type": "create", "sessionKey": "default"})
    await router.handle(channel, {"type": "create", "sessionKey": "scratch"})

    router.disconnect(channel)

    assert router.keys_for(channel) == []
    assert len(session_manager) == 2
    assert not any(process.killed for process in spawner.processes)

    newcomer, newcomer_box = _channel("newcomer")
    await router.handle(newcomer, {"type": "attach", "sessionKey": "scratch"})
    await _drain(newcomer)
    assert newcomer_box.events == [{"type": "attached", "sessionKey": "scratch"}]


@pytest.mark.asyncio
async def test_process_exit_notifies_owner_and_clears_routing(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    spawner.last.finish(0)
    await _drain(channel)

    assert outbox.events[-1] == {"type": "exit", "sessionKey": "default", "exitCode": 0}
    assert router.owner_of("default") is None


@pytest.mark.asyncio
async def test_trailing_partial_character_is_flushed_before_exit(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    spawner.last.emit(b"ok" + "é".encode("utf-8")[:1])
    spawner.last.finish(3)
    await _drain(channel)

    assert outbox.events[1:] == [
        {"type": "data", "sessionKey": "default", "data": "ok"},
        {"type": "data", "sessionKey": "default", "data": "\ufffd"},
        {"type": "exit", "sessionKey": "default", "exitCode": 3},
    ]


@pytest.mark.asyncio
async def test_spawn_failure_outside_oserror_keeps_channel_usable(router: ChannelRouter, spawner: FakePtySpawner) -> None:
    channel, outbox = _channel("viewer")
    spawner.fail_with = subprocess.SubprocessError("Exception occurred in preexec_fn.")

    await router.handle(channel, {"type": "create"})
    spawner.fail_with = None
    await router.handle(channel, {"type": "create"})
    await _drain(channel)

    assert outbox.events[0]["type"] == "error"
    assert "Failed to spawn terminal process" in outbox.events[0]["message"]
    assert outbox.events[1] == {"type": "created", "sessionKey": "default"}
    assert router.owner_of("default") is channel


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_error_event(
    router: ChannelRouter, session_manager: SessionManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    channel, outbox = _channel("viewer")
    await router.handle(channel, {"type": "create"})

    def _explode(key: str, data: bytes) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(session_manager, "write", _explode)
    await router.handle(channel, {"type": "input", "data": "ls\r"})
    await _drain(channel)

    assert outbox.events[-1] == {"type": "error", "sessionKey": "default", "message": "Internal error: boom"}
    assert router.owner_of("default") is channel
