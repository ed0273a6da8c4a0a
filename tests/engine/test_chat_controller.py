import asyncio
import threading
import time

import pytest

from fake_runtime import FakeBackend
from genny.engine.controller import (
    DECODE_ERROR,
    ENCODE_ERROR,
    INFERENCE_ERROR,
    MODEL_LOAD_ERROR,
    ChatController,
    ControllerConfig,
    parse_token_ids,
)
from genny.engine.errors import ParseError
from genny.engine.session import InferenceSession, SessionState
from genny.engine.types import ErrorNotice, HistoryChanged, PropertyChanged

MARKER = "\n\n[Operation Canceled]"


def _controller(reply: str = "Hello world") -> tuple[FakeBackend, ChatController, list]:
    backend = FakeBackend(reply=reply)
    controller = ChatController(
        InferenceSession(backend),
        config=ControllerConfig(default_model_path="models/a"),
    )
    events: list = []
    controller.subscribe(events.append)
    return backend, controller, events


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _notices(events: list) -> list[ErrorNotice]:
    return [e for e in events if isinstance(e, ErrorNotice)]


def test_send_prompt_streams_reply_into_history() -> None:
    _, controller, events = _controller("Hello world")

    async def run() -> None:
        assert await controller.load_model()
        await controller.send_prompt("Hi there")

    asyncio.run(run())

    history = controller.history
    assert [(e.content, e.is_user_input) for e in history] == [
        ("Hi there", True),
        ("Hello world", False),
    ]
    assert controller.current_result is history[1]
    assert controller.prompt == ""
    assert controller.is_generating is False
    assert controller.last_stats is not None
    assert controller.last_stats.finish_reason == "stop"
    assert HistoryChanged("append", 0) in events
    assert HistoryChanged("append", 1) in events
    assert _notices(events) == []


def test_leading_whitespace_fragments_do_not_start_reply() -> None:
    _, controller, _ = _controller("\n\n Hi")

    async def run() -> None:
        await controller.load_model()
        await controller.send_prompt("x")

    asyncio.run(run())
    assert controller.history[-1].content == "Hi"


def test_blank_prompt_is_a_noop() -> None:
    backend, controller, events = _controller()

    async def run() -> None:
        await controller.load_model()
        events.clear()
        await controller.send_prompt("   ")

    asyncio.run(run())
    assert controller.history == ()
    assert backend.generators == []
    assert not any(isinstance(e, HistoryChanged) for e in events)


def test_send_prompt_without_model_reports_inference_error() -> None:
    _, controller, events = _controller()
    asyncio.run(controller.send_prompt("hello"))

    notices = _notices(events)
    assert len(notices) == 1
    assert notices[0].operation == INFERENCE_ERROR
    assert controller.history == ()
    assert controller.is_generating is False


def test_only_one_generation_in_flight() -> None:
    backend, controller, _ = _controller("ok")
    backend.step_gate = threading.Event()

    async def run() -> None:
        await controller.load_model()
        first = asyncio.create_task(controller.send_prompt("first"))
        await asyncio.sleep(0)
        assert controller.is_generating is True
        assert controller.can_send_prompt() is False

        await controller.send_prompt("second")
        assert [e.content for e in controller.history] == ["first"]

        backend.step_gate.set()
        await first

    asyncio.run(run())
    assert [e.content for e in controller.history] == ["first", "ok"]
    assert len(backend.generators) == 1


def test_rejected_send_leaves_prompt_untouched() -> None:
    backend, controller, events = _controller("ok")
    backend.step_gate = threading.Event()

    async def run() -> None:
        await controller.load_model()
        first = asyncio.create_task(controller.send_prompt("first"))
        await asyncio.sleep(0)
        controller.prompt = "draft"
        events.clear()

        await controller.send_prompt("second")
        assert controller.prompt == "draft"
        assert PropertyChanged("prompt") not in events

        backend.step_gate.set()
        await first

    asyncio.run(run())
    assert [e.content for e in controller.history] == ["first", "ok"]
    assert controller.prompt == "draft"


def test_concurrent_sends_start_one_generation() -> None:
    backend, controller, _ = _controller("ok")

    async def run() -> None:
        await controller.load_model()
        controller.prompt = "same"
        await asyncio.gather(controller.send_prompt(), controller.send_prompt())

    asyncio.run(run())
    assert [e.is_user_input for e in controller.history] == [True, False]
    assert len(backend.generators) == 1


def test_cancel_before_first_fragment_adds_marker_entry() -> None:
    backend, controller, events = _controller("Hello")
    backend.encode_gate = threading.Event()

    async def run() -> None:
        await controller.load_model()
        task = asyncio.create_task(controller.send_prompt("Hi"))
        await asyncio.sleep(0)
        assert controller.can_cancel() is True
        controller.cancel()
        backend.encode_gate.set()
        await task

    asyncio.run(run())
    history = controller.history
    assert len(history) == 2
    assert history[1].is_user_input is False
    assert history[1].content == "[Operation Canceled]"
    assert backend.steps_done == 0
    assert controller.last_stats is not None
    assert controller.last_stats.finish_reason == "cancelled"
    assert _notices(events) == []


def test_cancel_mid_stream_appends_marker() -> None:
    backend, controller, _ = _controller("Hello world")
    backend.step_gate = threading.Event()
    backend.gate_from = 5

    async def run() -> None:
        await controller.load_model()
        task = asyncio.create_task(controller.send_prompt("Hi"))
        await _wait_for(
            lambda: controller.current_result is not None and controller.current_result.content == "Hello"
        )
        controller.cancel()
        backend.step_gate.set()
        await task

    asyncio.run(run())
    # The step already in progress when cancel was requested still completes.
    assert controller.history[-1].content == "Hello " + MARKER
    assert controller.is_generating is False
    assert controller.can_cancel() is False
    for resource in backend.generators + backend.params + backend.streams:
        assert resource.closed is True


def test_cancel_without_generation_is_noop() -> None:
    _, controller, events = _controller()
    controller.cancel()
    assert controller.history == ()
    assert events == []


def test_runtime_failure_surfaces_inference_error() -> None:
    backend, controller, events = _controller("Hello")
    backend.fail_at_step = 2

    async def run() -> None:
        await controller.load_model()
        await controller.send_prompt("x")

    asyncio.run(run())
    notices = _notices(events)
    assert [n.operation for n in notices] == [INFERENCE_ERROR]
    assert "device lost" in notices[0].message
    assert controller.last_error is notices[0]
    # Partial output stays in history.
    assert controller.history[-1].content == "He"
    assert controller.is_generating is False


def test_clear_history_empties_list() -> None:
    _, controller, events = _controller("ok")

    async def run() -> None:
        await controller.load_model()
        await controller.send_prompt("x")

    asyncio.run(run())
    controller.clear_history()
    assert controller.history == ()
    assert events[-1] == HistoryChanged("clear")


def test_load_error_is_reported_and_retry_works() -> None:
    _, controller, events = _controller()

    async def run() -> tuple[bool, bool]:
        ok_bad = await controller.load_model("bad/folder")
        ok_good = await controller.load_model("models/b")
        return ok_bad, ok_good

    ok_bad, ok_good = asyncio.run(run())
    assert ok_bad is False
    assert ok_good is True
    notices = _notices(events)
    assert [n.operation for n in notices] == [MODEL_LOAD_ERROR]
    assert "bad/folder" in notices[0].error.path
    assert controller.is_model_loaded is True
    assert controller.model_path == "models/b"


def test_load_model_requires_path() -> None:
    backend = FakeBackend()
    controller = ChatController(InferenceSession(backend))
    assert controller.can_load_model() is False
    assert asyncio.run(controller.load_model()) is False
    assert backend.models == []


def test_unload_model_updates_state() -> None:
    backend, controller, events = _controller()

    async def run() -> None:
        await controller.load_model()
        await controller.unload_model()

    asyncio.run(run())
    assert controller.is_model_loaded is False
    assert backend.live_models == 0
    assert PropertyChanged("is_model_loaded") in events


def test_reload_during_generation_cancels_first() -> None:
    backend, controller, _ = _controller("Hello world")
    backend.step_gate = threading.Event()
    backend.gate_from = 2

    async def run() -> bool:
        await controller.load_model()
        task = asyncio.create_task(controller.send_prompt("x"))
        await _wait_for(lambda: backend.steps_done == 2)
        reload = asyncio.create_task(controller.load_model("models/b"))
        await asyncio.sleep(0)
        backend.step_gate.set()
        await task
        return await reload

    assert asyncio.run(run()) is True
    assert controller.history[-1].content.endswith(MARKER)
    assert backend.max_live_models == 1
    assert controller.model_path == "models/b"


def test_cancelled_send_task_holds_model_until_runtime_stops() -> None:
    backend, controller, _ = _controller("Hello world")
    backend.step_gate = threading.Event()
    backend.gate_from = 2

    async def run() -> bool:
        await controller.load_model()
        task = asyncio.create_task(controller.send_prompt("x"))
        await _wait_for(lambda: backend.steps_done == 2 and controller.current_result is not None)
        task.cancel()
        await asyncio.sleep(0.05)

        # The worker is still inside a step, so the flight stays claimed.
        assert controller.is_generating is True
        assert controller.session.state is SessionState.GENERATING

        reload = asyncio.create_task(controller.load_model("models/b"))
        await asyncio.sleep(0.05)
        assert len(backend.models) == 1
        assert backend.models[0].closed is False

        backend.step_gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await reload

    assert asyncio.run(run()) is True
    generator, first_model = backend.generators[0], backend.models[0]
    assert backend.released.index(generator) < backend.released.index(first_model)
    assert backend.max_live_models == 1
    assert controller.history[-1].content.startswith("H")
    assert controller.history[-1].content.endswith(MARKER)
    assert controller.is_generating is False
    assert controller.model_path == "models/b"


def test_encode_debug_formats_ids() -> None:
    _, controller, _ = _controller()

    async def run() -> str | None:
        await controller.load_model()
        return await controller.encode_debug("ab")

    assert asyncio.run(run()) == "1097, 1098"
    assert controller.tokenizer_encode_result == "1097, 1098"


def test_encode_debug_without_model_reports_error() -> None:
    _, controller, events = _controller()
    assert asyncio.run(controller.encode_debug("ab")) is None
    assert [n.operation for n in _notices(events)] == [ENCODE_ERROR]


def test_decode_debug_parses_comma_separated_ids() -> None:
    _, controller, _ = _controller()

    async def run() -> str | None:
        await controller.load_model()
        return await controller.decode_debug(" 1104, 1105,,")

    assert asyncio.run(run()) == "hi"
    assert controller.tokenizer_decode_result == "hi"


def test_decode_debug_reports_parse_error() -> None:
    _, controller, events = _controller()

    async def run() -> str | None:
        await controller.load_model()
        return await controller.decode_debug("a,b")

    assert asyncio.run(run()) is None
    notices = _notices(events)
    assert [n.operation for n in notices] == [DECODE_ERROR]
    assert isinstance(notices[0].error, ParseError)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1, 2,3", [1, 2, 3]),
        ("1,,2", [1, 2]),
        ("  42  ", [42]),
        ("-1,+2", [-1, 2]),
        ("", []),
    ],
)
def test_parse_token_ids(text: str, expected: list[int]) -> None:
    assert parse_token_ids(text) == expected


@pytest.mark.parametrize("text", ["a,b", "1.5", "1 2", "0x10"])
def test_parse_token_ids_rejects_non_integers(text: str) -> None:
    with pytest.raises(ParseError):
        parse_token_ids(text)


def test_failing_listener_does_not_break_commands() -> None:
    _, controller, _ = _controller("ok")

    def bad_listener(event) -> None:
        raise RuntimeError("listener bug")

    controller.subscribe(bad_listener)

    async def run() -> None:
        await controller.load_model()
        await controller.send_prompt("x")

    asyncio.run(run())
    assert controller.history[-1].content == "ok"


def test_unsubscribe_stops_events() -> None:
    _, controller, events = _controller()
    other: list = []
    unsubscribe = controller.subscribe(other.append)
    controller.prompt = "a"
    unsubscribe()
    controller.prompt = "b"
    assert other == [PropertyChanged("prompt")]
    assert events.count(PropertyChanged("prompt")) == 2


def test_update_search_config_validates() -> None:
    _, controller, events = _controller()
    cfg = controller.update_search_config(top_k="5")
    assert cfg.top_k == 5
    assert controller.search_config.top_k == 5
    assert PropertyChanged("search_config") in events
    with pytest.raises(ValueError):
        controller.update_search_config(top_p=2)
    assert controller.search_config.top_p == 0.9
