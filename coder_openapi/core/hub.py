"""
coder-openapi :: Hub Client

Fetches single model files from the Hugging Face Hub by (hub_id, filename).
There is no retry here: a failed fetch surfaces to the caller.
"""

from pathlib import Path
from typing import Optional

from huggingface_hub import hf_hub_download

from coder_openapi.core.logging import get_logger

logger = get_logger("coder_openapi.hub")


class HubClient:
    """Blocking hub client. The asset loader calls it from a worker thread."""

    def __init__(self, token: Optional[str] = None, revision: Optional[str] = None):
        self.token = token
        self.revision = revision

    def fetch(self, hub_id: str, filename: str, local_dir: Path) -> Path:
        """Download hub_id/filename into local_dir and return the local path."""
        logger.info(f"Fetching {hub_id}/{filename}")
        path = hf_hub_download(
            repo_id=hub_id,
            filename=filename,
            revision=self.revision,
            local_dir=str(local_dir),
            token=self.token,
        )
        return Path(path)
