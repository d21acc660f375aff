"""
coder-openapi :: Generation Loop

    prompt ids = concat(encode(m.content) for m in messages)
    repeat max_tokens times:
        logits = stack(prompt + generated)     # full recompute, no KV cache
        next   = sample(logits)
    reply = decode(generated)

Parameters are validated before any tensor work. Each step (forward pass +
sampling) runs in a worker thread so the event loop keeps serving other
requests. Non-streaming replies always contain exactly max_tokens tokens.

Streaming pushes one assistant fragment per step into a StreamChannel and
stops as soon as the channel refuses a fragment (consumer gone or buffer
full for too long).
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch

from coder_openapi.core.chat import ChatMessage, ChatParams
from coder_openapi.core.errors import InvalidParameter
from coder_openapi.core.logging import get_logger
from coder_openapi.core.sampling import sample_next
from coder_openapi.engine.channel import StreamChannel
from coder_openapi.models.registry import ModelHandle

logger = get_logger("coder_openapi.generation")

REPLACEMENT_CHAR = "\ufffd"


def _unsent(emitted: str, text: str) -> str:
    """Part of the decoded text past what the stream already carries."""
    return text[len(os.path.commonprefix([emitted, text])):]


@dataclass
class GenerationResult:
    """Output of one chat completion."""
    messages: List[ChatMessage]
    prompt_tokens: int
    completion_tokens: int
    finish_reason: str = "length"
    elapsed_ms: float = 0.0
    output_token_ids: List[List[int]] = field(default_factory=list)


class GenerationLoop:
    """
    Autoregressive decoding over a loaded ModelHandle.

    Args:
        generator: optional torch.Generator for reproducible sampling
    """

    def __init__(self, generator: Optional[torch.Generator] = None):
        self.generator = generator

    # -----------------------------------------------------------------
    # Preparation
    # -----------------------------------------------------------------

    def prepare(
        self,
        handle: ModelHandle,
        messages: Sequence[ChatMessage],
        params: ChatParams,
    ) -> Tuple[ChatParams, List[int]]:
        """Validate params, fill defaults and encode the prompt."""
        params = params.validate().with_defaults(
            top_p=handle.config.top_p,
            max_tokens=handle.config.max_tokens,
        )
        if not messages:
            raise InvalidParameter("messages", "at least one message is required")

        prompt: List[int] = []
        for message in messages:
            prompt.extend(handle.tokenizer.encode(message.content))
        if not prompt:
            raise InvalidParameter("messages", "messages produced no tokens")
        return params, prompt

    def _step(self, handle: ModelHandle, tokens: List[int], params: ChatParams) -> int:
        logits = handle.stack(tokens)
        return sample_next(logits, params.temperature, top_p=params.top_p, generator=self.generator)

    async def _decode(self, handle: ModelHandle, prompt: List[int], params: ChatParams) -> List[int]:
        tokens = list(prompt)
        generated: List[int] = []
        for _ in range(params.max_tokens):
            next_id = await asyncio.to_thread(self._step, handle, tokens, params)
            tokens.append(next_id)
            generated.append(next_id)
        return generated

    # -----------------------------------------------------------------
    # Non-streaming
    # -----------------------------------------------------------------

    async def run(
        self,
        handle: ModelHandle,
        messages: Sequence[ChatMessage],
        params: ChatParams,
    ) -> GenerationResult:
        start = time.perf_counter()
        params, prompt = self.prepare(handle, messages, params)

        replies, outputs = [], []
        for _ in range(params.n):
            generated = await self._decode(handle, prompt, params)
            outputs.append(generated)
            replies.append(ChatMessage.assistant(handle.tokenizer.decode(generated)))

        elapsed = (time.perf_counter() - start) * 1000
        completion_tokens = sum(len(o) for o in outputs)
        logger.debug(
            f"{handle.model_id}: {params.n} choice(s), prompt={len(prompt)} "
            f"generated={completion_tokens} in {elapsed:.1f}ms"
        )
        return GenerationResult(
            messages=replies,
            prompt_tokens=len(prompt),
            completion_tokens=completion_tokens,
            elapsed_ms=elapsed,
            output_token_ids=outputs,
        )

    async def generate(
        self,
        handle: ModelHandle,
        messages: Sequence[ChatMessage],
        params: ChatParams,
    ) -> List[ChatMessage]:
        """One assistant message per requested choice."""
        result = await self.run(handle, messages, params)
        return result.messages

    # -----------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------

    async def generate_stream(
        self,
        handle: ModelHandle,
        messages: Sequence[ChatMessage],
        params: ChatParams,
        channel: StreamChannel,
    ) -> GenerationResult:
        """
        Single-choice streaming decode.

        The channel is always finished on return, whether generation ran to
        max_tokens, was aborted by back-pressure or raised.
        """
        start = time.perf_counter()
        try:
            params, prompt = self.prepare(handle, messages, params)
            tokens = list(prompt)
            generated: List[int] = []
            emitted = ""
            held = False
            finish_reason = "length"

            for _ in range(params.max_tokens):
                next_id = await asyncio.to_thread(self._step, handle, tokens, params)
                tokens.append(next_id)
                generated.append(next_id)

                text = handle.tokenizer.decode(generated)
                held = text.endswith(REPLACEMENT_CHAR)
                if held:
                    fragment = ""               # incomplete multi-byte sequence
                else:
                    fragment = _unsent(emitted, text)
                    emitted += fragment

                if not await channel.send(ChatMessage.assistant(fragment)):
                    finish_reason = channel.abort_reason or "abort"
                    logger.info(
                        f"{handle.model_id}: stream stopped after {len(generated)} tokens ({finish_reason})"
                    )
                    break

            if held and finish_reason == "length":
                # text held back behind a replacement char is sent as-is
                tail = _unsent(emitted, text)
                if tail and await channel.send(ChatMessage.assistant(tail)):
                    emitted += tail
        finally:
            channel.finish()

        return GenerationResult(
            messages=[ChatMessage.assistant(emitted)],
            prompt_tokens=len(prompt),
            completion_tokens=len(generated),
            finish_reason=finish_reason,
            elapsed_ms=(time.perf_counter() - start) * 1000,
            output_token_ids=[generated],
        )
