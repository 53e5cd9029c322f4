"""
Thread analysis using a local LLM.

The thread summary writer depends only on the ``Summarizer`` interface.
``OllamaThreadSummarizer`` is the bundled implementation: it asks a local
Ollama model for a JSON analysis of the conversation and falls back to a
heuristic analysis when the model answers with something unusable.

The unresponded count is always computed locally from message
directions; the model is never trusted with arithmetic.

## Usage

    from omnicrm.services.summarizer import OllamaThreadSummarizer

    summarizer = OllamaThreadSummarizer()
    analysis = summarizer.analyze(messages, owner, "Jane Doe")
"""
import httpx
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Protocol

from config.settings import settings
from omnicrm.services.message_store import StoredMessage
from omnicrm.services.platforms import Direction, OwnerIdentity
from omnicrm.services.resilience import SummarizerError

logger = logging.getLogger(__name__)

THREAD_STATUSES = {
    "awaiting_user_response",
    "awaiting_contact_response",
    "concluded",
    "ongoing",
}

URGENCY_LEVELS = ("low", "medium", "high", "urgent")

URGENT_KEYWORDS = {"urgent", "asap", "immediately", "emergency", "deadline", "today"}

# Characters of each message body included in the prompt
MAX_MESSAGE_CHARS = 500


@dataclass
class ThreadAnalysis:
    """Structured result of analyzing one thread."""
    summary: str
    key_topics: list[str] = field(default_factory=list)
    current_status: str = "ongoing"
    urgency: str = "low"
    action_items: list[str] = field(default_factory=list)
    unresponded_count: int = 0
    generated_by: str = "heuristic"

    def to_dict(self) -> dict:
        return asdict(self)


class Summarizer(Protocol):
    """Anything that can analyze an ordered list of thread messages."""

    def analyze(
        self,
        messages: list[StoredMessage],
        owner: OwnerIdentity,
        contact_name: str,
    ) -> ThreadAnalysis:
        ...


def count_unresponded(messages: list[StoredMessage]) -> int:
    """Inbound messages that arrived after the owner's last outbound message."""
    count = 0
    for message in reversed(messages):
        if message.direction == Direction.OUTBOUND:
            break
        count += 1
    return count


def heuristic_analysis(messages: list[StoredMessage], contact_name: str) -> ThreadAnalysis:
    """
    Analysis built from message metadata alone.

    Used when the model output cannot be parsed, so a thread never ends up
    without any summary at all.
    """
    unresponded = count_unresponded(messages)
    if not messages:
        return ThreadAnalysis(summary=f"No messages with {contact_name}.", current_status="concluded")

    last = messages[-1]
    snippet = " ".join(last.content.split())[:120]
    who = "You" if last.direction == Direction.OUTBOUND else contact_name
    summary = f"{len(messages)} messages with {contact_name}. Latest from {who}: {snippet}"

    text = " ".join(m.content.lower() for m in messages[-5:])
    if any(word in text for word in URGENT_KEYWORDS):
        urgency = "high"
    elif unresponded >= 3:
        urgency = "medium"
    else:
        urgency = "low"

    status = "awaiting_user_response" if unresponded else "awaiting_contact_response"
    return ThreadAnalysis(
        summary=summary,
        current_status=status,
        urgency=urgency,
        unresponded_count=unresponded,
    )


THREAD_PROMPT = """You are analyzing a conversation between {owner_name} (the user) and {contact_name}.

Messages, oldest first:
{transcript}

Respond with a single JSON object with these keys:
- "summary": 1-2 sentences describing the conversation
- "key_topics": up to 5 short topic strings
- "current_status": one of "awaiting_user_response", "awaiting_contact_response", "concluded", "ongoing"
- "urgency": one of "low", "medium", "high", "urgent"
- "action_items": list of concrete follow-ups for the user (may be empty)

JSON:"""


def _format_transcript(messages: list[StoredMessage], owner_name: str, contact_name: str) -> str:
    lines = []
    for message in messages:
        speaker = owner_name if message.direction == Direction.OUTBOUND else contact_name
        body = " ".join(message.content.split())[:MAX_MESSAGE_CHARS]
        lines.append(f"[{message.timestamp.strftime('%Y-%m-%d %H:%M')}] {speaker}: {body}")
    return "\n".join(lines)


def _parse_model_output(raw: str) -> Optional[dict]:
    """Extract the JSON object from a model response, tolerating surrounding text."""
    if not raw:
        return None
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not str(data.get("summary", "")).strip():
        return None
    return data


def _string_list(value, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()][:limit]


class OllamaThreadSummarizer:
    """
    Summarizer backed by Ollama's /api/generate endpoint.

    Raises SummarizerError on timeouts, connection failures and HTTP errors
    so the caller can keep the previous summary.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.host = (host or settings.ollama_host).rstrip("/")
        self.model = model or settings.ollama_model
        self.timeout = timeout if timeout is not None else settings.ollama_timeout
        self._client = client

    def analyze(
        self,
        messages: list[StoredMessage],
        owner: OwnerIdentity,
        contact_name: str,
    ) -> ThreadAnalysis:
        owner_name = owner.display_name or "the user"
        prompt = THREAD_PROMPT.format(
            owner_name=owner_name,
            contact_name=contact_name,
            transcript=_format_transcript(messages, owner_name, contact_name),
        )
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0.2,  # Low temperature for factual summary
                "num_predict": 400,
            },
        }

        try:
            data = self._post(payload)
        except httpx.TimeoutException as e:
            raise SummarizerError(f"Ollama timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise SummarizerError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise SummarizerError(f"Ollama returned a non-JSON body: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("response", ""), str):
            raise SummarizerError(f"Unexpected Ollama response shape: {type(data).__name__}")

        parsed = _parse_model_output(data.get("response", ""))
        if parsed is None:
            logger.warning(f"Unusable model output for thread with {contact_name}, using heuristic analysis")
            return heuristic_analysis(messages, contact_name)

        status = parsed.get("current_status")
        urgency = parsed.get("urgency")
        return ThreadAnalysis(
            summary=str(parsed["summary"]).strip(),
            key_topics=_string_list(parsed.get("key_topics"), 5),
            current_status=status if status in THREAD_STATUSES else "ongoing",
            urgency=urgency if urgency in URGENCY_LEVELS else "low",
            action_items=_string_list(parsed.get("action_items"), 10),
            unresponded_count=count_unresponded(messages),
            generated_by=self.model,
        )

    def _post(self, payload: dict) -> dict:
        url = f"{self.host}/api/generate"
        if self._client is not None:
            response = self._client.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
