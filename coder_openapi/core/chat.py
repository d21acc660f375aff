"""
coder-openapi :: Chat Entities

ChatMessage is what goes in and comes out of a chat completion. ChatParams
carries the generation parameters of one request; validate() rejects out
of range values before any tensor work happens.
"""

import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional

from coder_openapi.core.errors import InvalidParameter

ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Any, index: int = 0) -> "ChatMessage":
        field = f"messages[{index}]"
        if not isinstance(data, dict):
            raise InvalidParameter(field, "each message must be an object with role and content")
        role = data.get("role")
        content = data.get("content")
        if role not in ROLES:
            raise InvalidParameter(f"{field}.role", f"role must be one of {', '.join(ROLES)}")
        if not isinstance(content, str):
            raise InvalidParameter(f"{field}.content", "content must be a string")
        return ChatMessage(role=role, content=content)

    @staticmethod
    def assistant(content: str) -> "ChatMessage":
        return ChatMessage(role="assistant", content=content)


def _is_real(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class ChatParams:
    """
    Generation parameters of one request.

    temperature=None means greedy decoding. top_p, n and max_tokens fall
    back to the model's defaults through with_defaults().
    """
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n: Optional[int] = None
    max_tokens: Optional[int] = None
    stream: bool = False

    def validate(self) -> "ChatParams":
        t = self.temperature
        if t is not None and not (_is_real(t) and math.isfinite(t) and 0.0 < t <= 2.0):
            raise InvalidParameter("temperature", "temperature must be between 0 and 2")
        p = self.top_p
        if p is not None and not (_is_real(p) and math.isfinite(p) and 0.0 < p <= 1.0):
            raise InvalidParameter("top_p", "top_p must be between 0 and 1")
        if self.n is not None and not (_is_count(self.n) and self.n >= 1):
            raise InvalidParameter("n", "n must be greater than 0")
        if self.max_tokens is not None and not (_is_count(self.max_tokens) and self.max_tokens >= 1):
            raise InvalidParameter("max_tokens", "max_tokens must be greater than 0")
        if not isinstance(self.stream, bool):
            raise InvalidParameter("stream", "stream must be a boolean")
        return self

    def with_defaults(self, top_p: float, max_tokens: int, n: int = 1) -> "ChatParams":
        return replace(
            self,
            top_p=self.top_p if self.top_p is not None else top_p,
            max_tokens=self.max_tokens if self.max_tokens is not None else max_tokens,
            n=self.n if self.n is not None else n,
        )

    @staticmethod
    def from_request(body: Dict[str, Any]) -> "ChatParams":
        return ChatParams(
            temperature=body.get("temperature"),
            top_p=body.get("top_p"),
            n=body.get("n"),
            max_tokens=body.get("max_tokens"),
            stream=body.get("stream", False),
        )
