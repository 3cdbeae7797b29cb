"""Tests for flow variables, the execution context and the transcript."""

import pytest

from chatflow.conversation.context import ExecutionContext
from chatflow.conversation.transcript import Sender, Transcript
from chatflow.conversation.variables import (
    VariableStore,
    contains_variables,
    extract_variable_names,
    interpolate,
)


class TestInterpolation:
    """Test {{name}} template rendering."""

    def test_known_variables_replaced(self):
        assert interpolate("Hola {{nombre}}, tienes {{edad}}", {"nombre": "Ana", "edad": 30}) == \
            "Hola Ana, tienes 30"

    def test_unknown_variable_left_verbatim(self):
        assert interpolate("Hi {{missing}}", {}) == "Hi {{missing}}"

    def test_text_without_tokens_unchanged(self):
        text = "Plain text with {single} braces"
        assert interpolate(text, {"single": "x"}) == text
        assert interpolate(interpolate(text, {}), {}) == text

    def test_empty_text(self):
        assert interpolate(None, {"a": 1}) == ""
        assert interpolate("", {"a": 1}) == ""

    def test_helpers(self):
        assert contains_variables("{{a}} and {{b}}")
        assert not contains_variables("nothing here")
        assert extract_variable_names("{{a}} and {{b}}") == ["a", "b"]


class TestVariableStore:
    """Test the scalar variable mapping."""

    def test_dollar_prefix_stripped(self):
        store = VariableStore()
        store.set("$name", "Ana")

        assert store.get("name") == "Ana"
        assert store.get("$name") == "Ana"
        assert "name" in store

    def test_names_are_case_sensitive(self):
        store = VariableStore({"Name": "Ana"})
        assert store.get("name") is None

    def test_non_scalar_rejected(self):
        store = VariableStore()
        with pytest.raises(TypeError):
            store.set("items", ["a", "b"])

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            VariableStore().set("$", "x")

    def test_copy_is_independent(self):
        store = VariableStore({"a": 1})
        clone = store.copy()
        clone.set("a", 2)

        assert store.get("a") == 1
        assert clone.get("a") == 2


class TestExecutionContext:
    """Test the immutable run state transitions."""

    def test_transitions_return_new_values(self):
        ctx = ExecutionContext.seeded("start")
        moved = ctx.move_to("next")

        assert ctx.current_node_id == "start"
        assert moved.current_node_id == "next"
        assert moved.terminated().is_terminated
        assert not moved.is_terminated

    def test_mark_processed_once(self):
        ctx, first = ExecutionContext.seeded("a").mark_processed("a")
        again, second = ctx.mark_processed("a")

        assert first is True
        assert second is False
        assert again is ctx
        assert ctx.has_processed("a")

    def test_with_variable_leaves_previous_store(self):
        ctx = ExecutionContext.seeded("a")
        updated = ctx.with_variable("name", "Ana")

        assert "name" not in ctx.variables
        assert updated.variables.get("name") == "Ana"


class TestTranscript:
    """Test transcript entries."""

    def test_agent_content_interpolated_at_append(self):
        transcript = Transcript()
        variables = {"nombre": "Ana"}

        transcript.append("Hola {{nombre}}", Sender.AGENT, variables)
        variables["nombre"] = "Eva"

        assert transcript[0].content == "Hola Ana"

    def test_user_content_not_interpolated(self):
        transcript = Transcript()
        transcript.append("{{nombre}}", Sender.USER, {"nombre": "Ana"})
        assert transcript.last.content == "{{nombre}}"

    def test_remove_transient(self):
        transcript = Transcript()
        transcript.append("Thinking...", Sender.SYSTEM, transient=True)
        transcript.append("Done", Sender.AGENT)

        assert transcript.remove_transient() == 1
        assert [entry.content for entry in transcript] == ["Done"]

    def test_to_list(self):
        transcript = Transcript()
        transcript.append("Hi", Sender.AGENT, has_audio=True, voice_label="Nova")

        data = transcript.to_list()

        assert data[0]["sender"] == "agent"
        assert data[0]["has_audio"] is True
        assert data[0]["voice_label"] == "Nova"
        assert "timestamp" in data[0]
