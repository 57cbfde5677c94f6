"""Tests for /commands: recognition, parsing, verbs and tab completion."""

import io
import logging

import pytest
from prompt_toolkit.document import Document

from llamachat.commands import (
    COMMANDS,
    COMPLETIONS,
    Command,
    CommandCompleter,
    handle_command,
    is_command,
    parse_command,
)
from llamachat.report import DIAGNOSTICS, set_diagnostics


def _snapshot(session):
    return (
        session.n_past,
        list(session.sampler.history),
        list(session.engine.decoded),
    )


@pytest.fixture(autouse=True)
def _diagnostics_off():
    set_diagnostics(False)
    yield
    set_diagnostics(False)


# ---------------------------------------------------------------------------
# Recognition and parsing
# ---------------------------------------------------------------------------


class TestRecognition:
    @pytest.mark.parametrize("line", ["/context", "/stats", "/foo bar", "/x"])
    def test_commands(self, line):
        assert is_command(line)

    @pytest.mark.parametrize(
        "line", ["/", "/2abc", "/ context", "//stats", "hello", " /stats", "", "/é"]
    )
    def test_not_commands(self, line):
        assert not is_command(line)

    def test_parse_splits_on_whitespace(self):
        cmd = parse_command("/context  a\tb  c ")
        assert cmd == Command("context", ["a", "b", "c"])

    def test_parse_without_args(self):
        assert parse_command("/stats") == Command("stats", [])

    def test_verbs_registered(self):
        assert set(COMMANDS) == {"stats", "context"}
        assert COMPLETIONS == ("/context", "/stats")


# ---------------------------------------------------------------------------
# handle_command
# ---------------------------------------------------------------------------


class TestHandleCommand:
    def test_chat_text_not_consumed(self, make_session):
        session = make_session()
        out = io.StringIO()
        assert handle_command(session, "/2abc", out=out) is False
        assert handle_command(session, "/", out=out) is False
        assert out.getvalue() == ""

    def test_unrecognized_verb(self, make_session):
        session = make_session()
        before = _snapshot(session)
        out = io.StringIO()

        assert handle_command(session, "/foo", out=out) is True

        lines = out.getvalue().splitlines()
        assert lines == ["foo: unrecognized command"]
        assert session.engine.calls == []
        assert _snapshot(session) == before

    def test_context_report(self, make_session):
        session = make_session(n_ctx=64, n_ctx_train=64)
        session.window.advance(10)
        out = io.StringIO()

        assert handle_command(session, "/context", out=out) is True

        assert out.getvalue() == (
            "10 out of 64 context tokens used (54 tokens remaining)\n"
        )

    def test_context_suggests_larger_window(self, make_session):
        session = make_session(n_ctx=64, n_ctx_train=4096)
        out = io.StringIO()
        handle_command(session, "/context", out=out)
        lines = out.getvalue().splitlines()
        assert lines[0] == "0 out of 64 context tokens used (64 tokens remaining)"
        assert lines[1] == "use the `-c 4096` flag at startup for maximum context"

    def test_context_is_read_only(self, make_session):
        session = make_session()
        session.window.advance(3)
        session.sampler.accept(7)
        before = _snapshot(session)
        handle_command(session, "/context", out=io.StringIO())
        assert _snapshot(session) == before
        assert session.engine.calls == []

    def test_context_ignores_args(self, make_session):
        session = make_session()
        out = io.StringIO()
        assert handle_command(session, "/context extra args", out=out) is True
        assert "context tokens used" in out.getvalue()

    def test_stats_logs_report_and_restores(self, make_session, caplog):
        session = make_session()
        session.window.advance(2)
        before = _snapshot(session)

        with caplog.at_level(logging.INFO, logger=DIAGNOSTICS.name):
            assert handle_command(session, "/stats", out=io.StringIO()) is True

        messages = [r.getMessage() for r in caplog.records if r.name == DIAGNOSTICS.name]
        assert messages == ["load time = 1.00 ms", "eval time = 2.00 ms / 3 runs"]
        assert DIAGNOSTICS.disabled is True
        assert _snapshot(session) == before
        assert session.engine.calls == [("perf_report",)]

    def test_stats_keeps_diagnostics_on_when_already_enabled(self, make_session):
        set_diagnostics(True)
        handle_command(make_session(), "/stats", out=io.StringIO())
        assert DIAGNOSTICS.disabled is False

    def test_diagnostics_silent_outside_stats(self, caplog):
        with caplog.at_level(logging.INFO, logger=DIAGNOSTICS.name):
            DIAGNOSTICS.info("hidden")
        assert "hidden" not in caplog.text


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class TestCompleter:
    def _complete(self, text):
        completer = CommandCompleter()
        return [c.text for c in completer.get_completions(Document(text), None)]

    def test_prefix(self):
        assert self._complete("/c") == ["/context"]
        assert self._complete("/s") == ["/stats"]

    def test_slash_offers_all(self):
        assert self._complete("/") == ["/context", "/stats"]

    def test_no_match(self):
        assert self._complete("hello") == []

    def test_replaces_typed_prefix(self):
        completer = CommandCompleter()
        (completion,) = completer.get_completions(Document("/sta"), None)
        assert completion.start_position == -4
