"""Upstream phased SSE to OpenAI chat completion chunks.

The upstream streams ``data: {json}`` records separated by blank lines. Each
delta carries a ``phase`` of ``think`` (chain of thought) or ``answer``. The
transducer folds both phases into one content stream, wrapping the thinking
text in a single ``<think>`` ... ``</think>`` block.

Framing and phase state live on the instance, so input may arrive split at
any byte offset and the output is the same.
"""

import codecs
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from qwenproxy.core.logging import get_logger


logger = get_logger(__name__)

THINK_OPEN = "<think>\n"
THINK_CLOSE = "\n</think>\n"
DONE_EVENT = b"data: [DONE]\n\n"
CHUNK_OBJECT = "chat.completion.chunk"


def format_data_event(data: dict[str, Any]) -> bytes:
    """Format one SSE data event."""
    json_data = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"data: {json_data}\n\n".encode()


class PhaseStreamTransducer:
    """Stateful converter from upstream SSE bytes to OpenAI SSE bytes.

    Call :meth:`feed` for every received chunk and :meth:`finish` once the
    upstream stream ends. Neither method reorders records.
    """

    def __init__(
        self,
        fallback_model: str = "qwen",
        completion_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4()}"
        self.fallback_model = fallback_model
        self._clock = clock
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._think_open = False
        self._think_closed = False
        self._model: str | None = None
        self._finished = False

    @property
    def thinking_open(self) -> bool:
        """Whether a ``<think>`` block has been opened and not yet closed."""
        return self._think_open and not self._think_closed

    def feed(self, chunk: bytes) -> list[bytes]:
        """Consume raw upstream bytes and return the complete events they yield."""
        if self._finished:
            raise RuntimeError("Transducer already finished")

        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")

        events: list[bytes] = []
        while "\n\n" in self._buffer:
            record, self._buffer = self._buffer.split("\n\n", 1)
            event = self._process_record(record)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[bytes]:
        """Flush trailing input, close an open think block, emit ``[DONE]``."""
        if self._finished:
            return []

        self._buffer += self._decoder.decode(b"", final=True)
        trailing = self._buffer.replace("\r\n", "\n").strip("\n")
        self._buffer = ""

        events: list[bytes] = []
        if trailing:
            event = self._process_record(trailing)
            if event is not None:
                events.append(event)

        if self.thinking_open:
            self._think_closed = True
            events.append(self._build_chunk(THINK_CLOSE, None))

        events.append(DONE_EVENT)
        self._finished = True
        return events

    async def transform(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Convert an async byte stream, ending with the ``[DONE]`` sentinel."""
        async for chunk in source:
            for event in self.feed(chunk):
                yield event
        for event in self.finish():
            yield event

    def _process_record(self, record: str) -> bytes | None:
        data_lines = [
            line[5:].lstrip(" ")
            for line in record.split("\n")
            if line.startswith("data:")
        ]
        if not data_lines:
            return None

        data_str = "\n".join(data_lines).strip()
        if not data_str or data_str == "[DONE]":
            return None

        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning("stream_record_parse_failed", data=data_str[:200])
            return None

        if not isinstance(payload, dict):
            return None

        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict):
            return None
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            return None

        content = delta.get("content") or ""
        if not isinstance(content, str):
            content = str(content)

        phase = delta.get("phase")
        if phase == "think" and not self._think_open:
            self._think_open = True
            content = f"{THINK_OPEN}{content}"
        elif phase == "answer" and self.thinking_open:
            self._think_closed = True
            content = f"{THINK_CLOSE}{content}"

        model = payload.get("model")
        if isinstance(model, str) and model:
            self._model = model

        return self._build_chunk(content, choice.get("finish_reason") or None)

    def _build_chunk(self, content: str, finish_reason: Any) -> bytes:
        return format_data_event(
            {
                "id": self.completion_id,
                "object": CHUNK_OBJECT,
                "created": int(self._clock()),
                "model": self._model or self.fallback_model,
                "choices": [
                    {
                        "index": 0,
                        "delta": {"content": content},
                        "finish_reason": finish_reason,
                    }
                ],
            }
        )


class CompletionAggregator:
    """Collects transducer output into a single ``chat.completion`` object."""

    def __init__(self) -> None:
        self._content: list[str] = []
        self._finish_reason: Any = None
        self._id: str | None = None
        self._model: str | None = None
        self._created: int | None = None

    def add_event(self, event: bytes) -> None:
        text = event.decode("utf-8").strip()
        if not text.startswith("data:"):
            return
        data_str = text[5:].strip()
        if data_str == "[DONE]":
            return
        chunk = json.loads(data_str)
        self._id = chunk.get("id", self._id)
        self._model = chunk.get("model", self._model)
        self._created = chunk.get("created", self._created)
        for choice in chunk.get("choices", []):
            self._content.append(choice.get("delta", {}).get("content") or "")
            if choice.get("finish_reason") is not None:
                self._finish_reason = choice["finish_reason"]

    def result(self) -> dict[str, Any]:
        return {
            "id": self._id or f"chatcmpl-{uuid.uuid4()}",
            "object": "chat.completion",
            "created": self._created or int(time.time()),
            "model": self._model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": "".join(self._content)},
                    "finish_reason": self._finish_reason or "stop",
                }
            ],
        }
