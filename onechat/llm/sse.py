import json
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "chunk"
# Events carrying the full text again after the deltas
FINAL_EVENTS = frozenset({"complete", "final", "done"})
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """Incremental decoder for the gateway's server-sent-event stream.

    Text is fed in arbitrary pieces; complete lines are parsed as they
    arrive and a trailing partial line waits for the next piece or for
    :meth:`flush`.  ``event:`` lines set the type of the current record
    (reset by a blank line), ``data:`` lines carry a JSON payload whose
    ``content`` field is the delta.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._event = DEFAULT_EVENT

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def flush(self) -> list[str]:
        remaining, self._buffer = self._buffer, ""
        return self._process_lines([remaining]) if remaining else []

    def _process_lines(self, lines: list[str]) -> list[str]:
        chunks = []
        for line in lines:
            content = self._process_line(line.rstrip("\r"))
            if content is not None:
                chunks.append(content)
        return chunks

    def _process_line(self, line: str) -> Optional[str]:
        if not line:
            self._event = DEFAULT_EVENT
            return None
        if line.startswith("event:"):
            self._event = line[len("event:"):].strip() or DEFAULT_EVENT
            return None
        if not line.startswith("data:"):
            return None
        if self._event in FINAL_EVENTS:
            return None

        data = line[len("data:"):].strip()
        if data == DONE_SENTINEL:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable stream record: %.200s", data)
            return None

        if not isinstance(payload, dict):
            return None
        content = payload.get("content")
        if isinstance(content, str) and content:
            return content
        return None
