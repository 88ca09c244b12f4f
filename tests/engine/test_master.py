"""
Tests for the master: session lifecycle, mode dispatch and the generation loop.
"""

import asyncio
import logging

import pytest

from nanoserve.config import RunMode, SessionConfig
from nanoserve.engine import master as master_module
from nanoserve.engine.master import Master
from nanoserve.errors import (
    AppendError,
    GenerationInProgressError,
    LoadError,
    ResetError,
    TokenError,
)
from nanoserve.model.base import Message


def _prime(master: Master) -> None:
    master.add_message(Message.system(master.config.system_prompt))
    master.add_message(Message.user(master.config.prompt))


class TestGenerationLoop:
    """Ordering, bounds and termination of the generation loop."""

    def test_stops_at_end_of_stream(self, make_master, recording_sink):
        master = make_master(["A", "B", None], sample_len=3)

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", "A", "B", ""]
        assert master.model.token_requests() == [0, 1, 2]

    def test_stops_at_sample_len(self, make_master, recording_sink):
        master = make_master(["X", "Y", "Z"], sample_len=2)

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", "X", "Y", ""]
        assert master.model.token_requests() == [0, 1]

    def test_zero_sample_len_makes_no_token_requests(self, make_master, recording_sink):
        master = make_master(["A"], sample_len=0)

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", ""]
        assert master.model.token_requests() == []

    @pytest.mark.parametrize("sample_len", [0, 1, 4, 10])
    def test_prompt_first_and_single_end_marker(self, make_master, recording_sink, sample_len):
        master = make_master([], sample_len=sample_len)

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink[0] == "Hello"
        assert recording_sink[-1] == ""
        assert recording_sink.count("") == 1
        assert len(recording_sink) - 2 <= sample_len

    def test_nothing_emitted_after_end_of_stream_token(self, make_master, recording_sink):
        master = make_master(["A", None, "never"], sample_len=5)

        asyncio.run(master.generate(recording_sink.append))

        assert "never" not in recording_sink
        assert master.model.token_requests() == [0, 1]

    def test_empty_token_text_is_not_forwarded(self, make_master, recording_sink):
        master = make_master(["A", "", "B"], sample_len=3)

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", "A", "B", ""]

    def test_echo_disabled_skips_prompt(self, make_master, recording_sink):
        master = make_master(["A", None])

        asyncio.run(master.generate(recording_sink.append, echo=False))

        assert recording_sink == ["A", ""]

    def test_per_call_sample_len_is_capped_by_config(self, make_master):
        master = make_master([], sample_len=3)

        short = []
        asyncio.run(master.generate(short.append, sample_len=1))
        assert short == ["Hello", "t0", ""]

        master.reset()
        capped = []
        asyncio.run(master.generate(capped.append, sample_len=50))
        assert capped == ["Hello", "t0", "t1", "t2", ""]

    def test_reports_whether_the_model_ended_the_stream(self, make_master):
        assert asyncio.run(make_master(["A", None], sample_len=5).generate(lambda text: None)) is True
        assert asyncio.run(make_master(["A", "B"], sample_len=2).generate(lambda text: None)) is False
        assert asyncio.run(make_master(["A"], sample_len=0).generate(lambda text: None)) is False

    def test_held_back_text_is_flushed_before_end_marker(self, make_master, recording_sink):
        master = make_master(["A", None], sample_len=5)
        master.model.flush = lambda: "é"

        asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", "A", "é", ""]

    def test_sink_object_with_call(self, make_master):
        class Sink:
            def __init__(self):
                self.calls = []

            def __call__(self, text):
                self.calls.append(text)

        master = make_master(["A", None])
        sink = Sink()

        asyncio.run(master.generate(sink))

        assert sink.calls == ["Hello", "A", ""]


class TestGenerationErrors:
    """Failures while producing tokens."""

    def test_backend_failure_raises_token_error_without_end_marker(self, make_master, recording_sink):
        master = make_master(["A", RuntimeError("device lost"), "B"], sample_len=3)

        with pytest.raises(TokenError, match="token 1") as exc_info:
            asyncio.run(master.generate(recording_sink.append))

        assert recording_sink == ["Hello", "A"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert not master.is_generating

    def test_backend_token_error_propagates_unchanged(self, make_master):
        error = TokenError("remote worker timed out")
        master = make_master([error])

        with pytest.raises(TokenError) as exc_info:
            asyncio.run(master.generate(lambda text: None))

        assert exc_info.value is error

    def test_sink_failure_propagates(self, make_master):
        master = make_master(["A", "B"])

        def broken_sink(text):
            if text == "A":
                raise BrokenPipeError("stdout closed")

        with pytest.raises(BrokenPipeError):
            asyncio.run(master.generate(broken_sink))

        # A write failure is not retried
        assert master.model.token_requests() == [0]

    def test_concurrent_generation_is_rejected(self, make_master):
        master = make_master(["A", None])

        async def scenario():
            master.model.gate = asyncio.Event()
            first_calls = []
            first = asyncio.create_task(master.generate(first_calls.append))
            await asyncio.sleep(0)

            assert master.is_generating
            with pytest.raises(GenerationInProgressError):
                await master.generate(lambda text: None)

            master.model.gate.set()
            await first
            return first_calls

        assert asyncio.run(scenario()) == ["Hello", "A", ""]
        assert not master.is_generating


class TestSessionLifecycle:
    """Creating, resetting and priming a master."""

    def test_create_uses_given_generator_class(self, session_config, fake_generator_cls):
        master = asyncio.run(Master.create(session_config, fake_generator_cls))

        assert isinstance(master.model, fake_generator_cls)
        assert master.config is session_config

    def test_create_wraps_backend_failure(self, session_config, fake_generator_cls):
        class Unloadable(fake_generator_cls):
            @classmethod
            async def load(cls, config):
                raise OSError("weights not found")

        with pytest.raises(LoadError, match="weights not found") as exc_info:
            asyncio.run(Master.create(session_config, Unloadable))

        assert isinstance(exc_info.value.__cause__, OSError)

    def test_create_unknown_model_type(self):
        config = SessionConfig(model_type="onnx")

        with pytest.raises(LoadError, match="Unknown model type"):
            asyncio.run(Master.create(config))

    def test_reset_then_generate_matches_fresh_session(self, make_master):
        script = ["The", " sky", " is", None]
        reused = make_master(script, sample_len=4)
        fresh = make_master(script, sample_len=4)

        first = []
        _prime(reused)
        asyncio.run(reused.generate(first.append))

        reused.reset()
        second = []
        _prime(reused)
        asyncio.run(reused.generate(second.append))

        expected = []
        _prime(fresh)
        asyncio.run(fresh.generate(expected.append))

        assert first == second == expected
        assert reused.model.generated_tokens() == fresh.model.generated_tokens()
        assert reused.model.messages == fresh.model.messages

    def test_reset_failure_raises_reset_error(self, make_master):
        master = make_master()
        master.model.reset_failure = RuntimeError("cache is corrupt")

        with pytest.raises(ResetError, match="cache is corrupt"):
            master.reset()

    def test_add_message_failure_raises_append_error(self, make_master):
        master = make_master()
        master.model.rejected_contents.add("bad")

        with pytest.raises(AppendError, match="user"):
            master.add_message(Message.user("bad"))


class TestModeDispatch:
    """Local generation vs. handing the master to the API server."""

    def test_mode_is_decided_at_construction(self, make_master):
        assert make_master().mode is RunMode.LOCAL
        assert make_master(api="127.0.0.1:8080").mode is RunMode.SERVED

    def test_local_run_primes_then_streams_to_stdout(self, make_master, capsys):
        master = make_master(["A", "B", None], sample_len=3)

        asyncio.run(master.run())

        assert capsys.readouterr().out == "HelloAB\n"
        assert master.model.events == [
            ("add_message", "system", "You are terse."),
            ("add_message", "user", "Hello"),
            ("next_token", 0),
            ("next_token", 1),
            ("next_token", 2),
        ]

    def test_local_run_failure_leaves_output_unterminated(self, make_master, capsys):
        master = make_master(["A", ValueError("nan logits")], sample_len=3)

        with pytest.raises(TokenError):
            asyncio.run(master.run())

        assert capsys.readouterr().out == "HelloA"

    def test_served_run_hands_off_without_generating(self, make_master, monkeypatch):
        served = []

        async def fake_serve(master):
            served.append(master)

        monkeypatch.setattr(master_module, "serve", fake_serve)
        master = make_master(api="127.0.0.1:8080")

        asyncio.run(master.run())

        assert served == [master]
        assert master.model.events == []


class TestTelemetryLogging:
    """Loop boundary log lines."""

    def test_logs_start_and_throughput(self, make_master, caplog):
        master = make_master(["A", "B", "C"], sample_len=3)

        with caplog.at_level(logging.INFO, logger="nanoserve.engine.telemetry"):
            asyncio.run(master.generate(lambda text: None))

        messages = [record.getMessage() for record in caplog.records]
        assert any(m.startswith("starting the inference loop (mem=") for m in messages)
        assert any(m.startswith("3 tokens generated (") and "token/s) - mem=" in m for m in messages)

    def test_single_token_reports_unavailable_throughput(self, make_master, caplog):
        master = make_master(["A", None], sample_len=1)

        with caplog.at_level(logging.INFO, logger="nanoserve.engine.telemetry"):
            asyncio.run(master.generate(lambda text: None))

        assert "1 tokens generated (n/a token/s)" in caplog.text
