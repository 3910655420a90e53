import base64
import logging
from typing import Optional, Protocol

from openai import OpenAI

from multimodal_rag.core.openai_client import get_openai_client
from multimodal_rag.prompts.loader import get_user_prompt
from multimodal_rag.utils.retry import with_retry

logger = logging.getLogger(__name__)


class ImageDescriber(Protocol):
    """Vision collaborator: PNG bytes in, natural-language description out."""

    def describe(self, png_bytes: bytes) -> str: ...


class OpenAIImageDescriber:
    """Describes images with an OpenAI vision model; the description is what gets embedded into the image collection.
    Why available: Images are searched by the meaning of their content, so every extracted image is turned into text first."""

    def __init__(
        self,
        model: str,
        *,
        prompt_version: Optional[str] = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        max_tokens: int = 500,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.prompt = get_user_prompt("image_description", version=prompt_version)
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def describe(self, png_bytes: bytes) -> str:
        b64 = base64.b64encode(png_bytes).decode("utf-8")
        content = [
            {"type": "text", "text": self.prompt},
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{b64}"}},
        ]
        completion = with_retry(
            lambda: self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                max_tokens=self.max_tokens,
            ),
            attempts=self.max_retries,
            delay_seconds=self.retry_delay_seconds,
            label="image description",
        )
        text = (completion.choices[0].message.content or "").strip()
        if not text:
            raise ValueError("vision model returned an empty description")
        return text
