"""
coder-openapi :: Tokenizer

Wraps a HuggingFace fast tokenizer (tokenizer.json) for text <-> token id
conversion. Every failure surfaces as TokenizerError.
"""

from pathlib import Path
from typing import List, Optional, Union

from tokenizers import Tokenizer

from coder_openapi.core.errors import TokenizerError
from coder_openapi.core.logging import get_logger

logger = get_logger("coder_openapi.tokenizer")


class CoderTokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])
    """

    def __init__(self, tokenizer: Tokenizer):
        self.tokenizer = tokenizer

    def encode(self, text: str) -> List[int]:
        """Text -> token IDs, without added special tokens."""
        try:
            return self.tokenizer.encode(text, add_special_tokens=False).ids
        except Exception as e:
            raise TokenizerError(f"Tokenizer error: failed to encode text: {e}") from e

    def decode(self, token_ids: List[int]) -> str:
        """Token IDs -> text, special tokens skipped."""
        try:
            return self.tokenizer.decode(list(token_ids), skip_special_tokens=True)
        except Exception as e:
            raise TokenizerError(f"Tokenizer error: failed to decode {len(token_ids)} ids: {e}") from e

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()

    def token_id(self, token: str) -> Optional[int]:
        return self.tokenizer.token_to_id(token)


def load_tokenizer(path: Union[str, Path]) -> CoderTokenizer:
    """Load tokenizer.json; absent or corrupt artifacts raise TokenizerError."""
    path = Path(path)
    if not path.exists():
        raise TokenizerError(f"Tokenizer file not found at path: {path}")
    try:
        tokenizer = Tokenizer.from_file(str(path))
    except Exception as e:
        raise TokenizerError(f"Failed to load tokenizer {path}: {e}") from e
    logger.debug(f"Tokenizer loaded from {path} (vocab={tokenizer.get_vocab_size()})")
    return CoderTokenizer(tokenizer)
