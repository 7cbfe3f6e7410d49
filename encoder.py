"""OpenAI chat-completion wire shapes for a finished ``CompletionResult``."""

import json
import time
import uuid

from config import settings

SSE_DONE = "data: [DONE]\n\n"


def split_into_chunks(text: str, size: int) -> list[str]:
    """Groups of ``size`` space-separated words; every group but the last keeps
    its trailing space, so ``"".join(chunks) == text``."""
    words = (text or "").split(" ")
    chunks = []
    for i in range(0, len(words), size):
        chunk = " ".join(words[i:i + size])
        if i + size < len(words):
            chunk += " "
        chunks.append(chunk)
    return chunks


def estimate_usage(prompt: str, content: str, reasoning=None) -> dict:
    # Character counts, not tokens
    prompt_tokens = len(prompt or "")
    completion_tokens = len(content or "") + len(reasoning or "")
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def model_list_response(records) -> dict:
    return {
        "object": "list",
        "data": [
            {
                "id": record.id,
                "object": "model",
                "created": record.created_at,
                "owned_by": record.group,
            }
            for record in records
        ],
    }


def sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class CompletionEncoder:
    """Shapes one request's result; id and timestamp are fixed per instance."""

    def __init__(self, model: str, prompt: str = "", chunk_words=None):
        self.model = model
        self.prompt = prompt
        self.chunk_words = chunk_words or settings.CHUNK_WORDS
        self.id = f"chatcmpl-{uuid.uuid4()}"
        self.created = int(time.time())

    def usage(self, result) -> dict:
        return estimate_usage(self.prompt, result.content, result.reasoning)

    def completion(self, result) -> dict:
        message = {"role": "assistant", "content": result.content}
        if result.reasoning:
            message["reasoning_content"] = result.reasoning
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
            "usage": self.usage(result),
        }

    def _chunk(self, delta: dict, finish_reason=None) -> dict:
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "logprobs": None, "finish_reason": finish_reason}],
        }

    def role_chunk(self) -> dict:
        return self._chunk({"role": "assistant", "content": None})

    def reasoning_chunks(self, reasoning):
        if not reasoning:
            return
        for piece in split_into_chunks(reasoning, self.chunk_words):
            yield self._chunk({"content": None, "reasoning_content": piece})

    def content_chunks(self, content):
        for piece in split_into_chunks(content, self.chunk_words):
            yield self._chunk({"content": piece})

    def final_chunk(self, result) -> dict:
        chunk = self._chunk({}, finish_reason="stop")
        chunk["usage"] = self.usage(result)
        return chunk

    def body_chunks(self, result):
        """Everything after the role chunk."""
        yield from self.reasoning_chunks(result.reasoning)
        yield from self.content_chunks(result.content)
        yield self.final_chunk(result)

    def chunks(self, result) -> list[dict]:
        return [self.role_chunk(), *self.body_chunks(result)]
