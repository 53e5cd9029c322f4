"""
Tests for thread analysis via Ollama.

Model calls go through an httpx.MockTransport; the live test at the bottom
needs a local Ollama and skips itself when none is reachable.
"""
import json

import httpx
import pytest

from omnicrm.services.message_store import StoredMessage
from omnicrm.services.platforms import Direction, OwnerIdentity
from omnicrm.services.resilience import SummarizerError
from omnicrm.services.summarizer import (
    OllamaThreadSummarizer,
    _parse_model_output,
    count_unresponded,
    heuristic_analysis,
)
from tests.fixtures.platform_fakes import at


def msg(message_id, minutes, direction=Direction.INBOUND, content="hello"):
    return StoredMessage(
        user_id="u1",
        platform="chat",
        platform_message_id=message_id,
        timestamp=at(minutes),
        thread_key="k1",
        direction=direction,
        content=content,
    )


THREAD = [
    msg("m1", 1, content="Can you send the Q3 plan?"),
    msg("m2", 2, Direction.OUTBOUND, content="Sure, by Friday"),
    msg("m3", 3, content="Thanks! Also the budget?"),
]

OWNER = OwnerIdentity(user_id="u1", display_name="Alex")


def summarizer_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OllamaThreadSummarizer(host="http://ollama.test", model="test-model", timeout=5, client=client)


@pytest.mark.unit
class TestOllamaThreadSummarizer:
    """Tests for the Ollama-backed summarizer."""

    def test_parses_model_json(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": json.dumps({
                "summary": "Jane asked for the Q3 plan and budget.",
                "key_topics": ["Q3 plan", "budget"],
                "current_status": "awaiting_user_response",
                "urgency": "medium",
                "action_items": ["Send budget"],
                "unresponded_count": 99,
            })})

        analysis = summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")

        assert seen["url"] == "http://ollama.test/api/generate"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["stream"] is False
        assert "Jane Doe: Thanks! Also the budget?" in seen["body"]["prompt"]
        assert "Alex: Sure, by Friday" in seen["body"]["prompt"]

        assert analysis.summary == "Jane asked for the Q3 plan and budget."
        assert analysis.key_topics == ["Q3 plan", "budget"]
        assert analysis.current_status == "awaiting_user_response"
        assert analysis.urgency == "medium"
        assert analysis.action_items == ["Send budget"]
        # Counted locally, never taken from the model
        assert analysis.unresponded_count == 1
        assert analysis.generated_by == "test-model"

    def test_out_of_vocabulary_values_defaulted(self):
        def handler(request):
            return httpx.Response(200, json={"response": json.dumps({
                "summary": "Chat.",
                "current_status": "sleeping",
                "urgency": "extreme",
                "key_topics": "not a list",
            })})

        analysis = summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")
        assert analysis.current_status == "ongoing"
        assert analysis.urgency == "low"
        assert analysis.key_topics == []

    def test_unparseable_output_falls_back_to_heuristic(self):
        def handler(request):
            return httpx.Response(200, json={"response": "I cannot help with that."})

        analysis = summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")
        assert analysis.generated_by == "heuristic"
        assert analysis.summary.startswith("3 messages with Jane Doe")

    def test_timeout_raises_summarizer_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SummarizerError):
            summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")

    def test_http_error_raises_summarizer_error(self):
        def handler(request):
            return httpx.Response(500, text="model crashed")

        with pytest.raises(SummarizerError):
            summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")

    def test_non_object_body_raises_summarizer_error(self):
        def handler(request):
            return httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(SummarizerError):
            summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")

    def test_non_string_response_field_raises_summarizer_error(self):
        def handler(request):
            return httpx.Response(200, json={"response": {"summary": "nested"}})

        with pytest.raises(SummarizerError):
            summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")

    def test_non_json_body_raises_summarizer_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>proxy error</html>")

        with pytest.raises(SummarizerError):
            summarizer_with(handler).analyze(THREAD, OWNER, "Jane Doe")


@pytest.mark.unit
class TestHeuristics:
    """Tests for the local fallbacks."""

    def test_count_unresponded(self):
        assert count_unresponded(THREAD) == 1
        assert count_unresponded(THREAD[:2]) == 0
        assert count_unresponded([msg("a", 1), msg("b", 2)]) == 2
        assert count_unresponded([]) == 0

    def test_heuristic_urgency(self):
        urgent = heuristic_analysis([msg("a", 1, content="Need this ASAP please")], "Jane")
        assert urgent.urgency == "high"
        assert urgent.current_status == "awaiting_user_response"

        calm = heuristic_analysis(THREAD[:2], "Jane")
        assert calm.urgency == "low"
        assert calm.current_status == "awaiting_contact_response"

    def test_parse_model_output_tolerates_wrapping(self):
        assert _parse_model_output('Sure! {"summary": "ok"} Hope that helps') == {"summary": "ok"}
        assert _parse_model_output('{"summary": ""}') is None
        assert _parse_model_output("") is None
        assert _parse_model_output("{broken") is None


@pytest.mark.requires_ollama
def test_live_ollama_summary():
    """Summarize a short thread with a real local model."""
    summarizer = OllamaThreadSummarizer()
    try:
        analysis = summarizer.analyze(THREAD, OWNER, "Jane Doe")
    except SummarizerError as e:
        pytest.skip(f"Ollama not available: {e}")
    assert analysis.summary
    assert analysis.unresponded_count == 1
