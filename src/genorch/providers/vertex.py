"""Synchronous image provider using the Vertex AI ``generateContent`` REST API.

Requests carry the style-only system instruction, the prompt text and the
style references as inline image parts.  Responses are parsed into typed
models at the boundary:

- a ``promptFeedback.blockReason`` or a ``SAFETY``/``BLOCKED`` finish reason
  is a blocked generation, raised as a non-retryable 422;
- otherwise the first inline part whose MIME type is ``image/*`` (or
  ``application/octet-stream``) and whose base64 payload is longer than 64
  characters is the image;
- a response without such a part is raised without a status, which the
  retry policy treats as transient.

Authentication uses a bearer token: the configured ``NN_GOOGLE_ACCESS_TOKEN``
when set, otherwise ``gcloud auth print-access-token``.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
from collections.abc import Sequence

import httpx
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from genorch.core.config import GenOrchConfig
from genorch.core.problems import RemoteCallError
from genorch.core.style_guard import STYLE_ONLY_PREFIX

from .base import ReachabilityCache, SyncProvider

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-z]+;base64,")


def vertex_endpoint(project: str, location: str, model: str, method: str = "generateContent") -> str:
    return (
        f"https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
        f"/locations/{location}/publishers/google/models/{model}:{method}"
    )


async def get_access_token(config: GenOrchConfig) -> str:
    """Bearer token for Vertex calls.

    Raises:
        RemoteCallError: 401 if no token can be obtained.
    """
    if config.google_access_token is not None:
        return config.google_access_token.get_secret_value()
    try:
        process = await asyncio.create_subprocess_exec(
            "gcloud",
            "auth",
            "print-access-token",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        raise RemoteCallError(
            f"gcloud is not available: {e}", status=401, operation="auth"
        ) from e
    token = stdout.decode().strip()
    if process.returncode != 0 or not token:
        raise RemoteCallError(
            "Failed to obtain an access token from gcloud", status=401, operation="auth"
        )
    return token


# ---------------------------------------------------------------------------
# Response payloads.
# ---------------------------------------------------------------------------


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class InlineData(_Lenient):
    data: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class Part(_Lenient):
    inline_data: InlineData | None = Field(default=None, alias="inlineData")
    text: str | None = None


class Content(_Lenient):
    role: str | None = None
    parts: list[Part] = Field(default_factory=list)


class Candidate(_Lenient):
    content: Content | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")


class PromptFeedback(_Lenient):
    block_reason: str | None = Field(default=None, alias="blockReason")


class GenerateContentResponse(_Lenient):
    candidates: list[Candidate] = Field(default_factory=list)
    prompt_feedback: PromptFeedback | None = Field(default=None, alias="promptFeedback")

    def block_reason(self) -> str | None:
        if self.prompt_feedback is not None and self.prompt_feedback.block_reason:
            return f"Blocked by prompt filter: {self.prompt_feedback.block_reason}"
        if not self.candidates and self.prompt_feedback is not None:
            return "Response blocked by safety filters"
        for candidate in self.candidates:
            if candidate.finish_reason == "SAFETY":
                return "Blocked by safety filter"
            if candidate.finish_reason == "BLOCKED":
                return "Response blocked"
        return None

    def first_image_base64(self) -> str | None:
        for candidate in self.candidates:
            if candidate.content is None:
                continue
            for part in candidate.content.parts:
                inline = part.inline_data
                if inline is None or not inline.data or not inline.mime_type:
                    continue
                if len(inline.data) > 64 and (
                    inline.mime_type.startswith("image/")
                    or inline.mime_type == "application/octet-stream"
                ):
                    return inline.data
        return None

    def first_text(self) -> str | None:
        for candidate in self.candidates:
            for part in candidate.content.parts if candidate.content else []:
                if part.text:
                    return part.text
        return None


def decode_image_base64(data: str) -> bytes:
    """Decode a base64 payload, tolerating a ``data:image/...`` prefix."""
    return base64.b64decode(_DATA_URL_PREFIX.sub("", data), validate=False)


def sniff_image_mime(data: bytes, default: str = "image/png") -> str:
    """MIME type of encoded image bytes, read from the header by Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format or "", default)
    except (OSError, ValueError):
        logger.debug("Unrecognised reference image, sending as %s", default)
        return default


def _reference_part(data: bytes) -> dict:
    return {
        "inlineData": {"mimeType": sniff_image_mime(data), "data": base64.b64encode(data).decode()}
    }


class VertexImageProvider(SyncProvider):
    """Synchronous provider for one Vertex image model.

    Args:
        config: Supplies project, location, model and timeouts.
        client: Shared ``httpx.AsyncClient``.
        reachability: Optional cache (a fresh 5 minute cache otherwise).
    """

    name = "vertex"
    description = "Gemini image generation on Vertex AI"

    def __init__(
        self,
        config: GenOrchConfig,
        client: httpx.AsyncClient | None = None,
        reachability: ReachabilityCache | None = None,
    ) -> None:
        super().__init__(reachability or ReachabilityCache(config.reachability_ttl_s))
        if not config.google_cloud_project:
            raise ValueError("google_cloud_project is required for the vertex provider")
        self.config = config
        self.project = config.google_cloud_project
        self.location = config.google_cloud_location
        self.model = config.vertex_model
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        logger.info(
            "Initialized vertex provider project=%s location=%s model=%s",
            self.project,
            self.location,
            self.model,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def endpoint(self) -> str:
        return vertex_endpoint(self.project, self.location, self.model)

    def build_request(self, prompt: str, references: Sequence[bytes] = ()) -> dict:
        return {
            "systemInstruction": {"parts": [{"text": STYLE_ONLY_PREFIX}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": prompt}, *(_reference_part(r) for r in references)],
                }
            ],
            "generationConfig": {"temperature": 0.8, "responseModalities": ["TEXT", "IMAGE"]},
        }

    async def _post(self, body: dict, timeout: float, operation: str) -> GenerateContentResponse:
        token = await get_access_token(self.config)
        response = await self.client.post(
            self.endpoint,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
        )
        if response.status_code >= 400:
            logger.error(
                "Vertex %s failed status=%d body=%s",
                operation,
                response.status_code,
                response.text[:500],
            )
            raise RemoteCallError(
                f"vertex {operation} {response.status_code}",
                status=response.status_code,
                operation=operation,
            )
        try:
            return GenerateContentResponse.model_validate(response.json())
        except ValueError as e:
            raise RemoteCallError(
                f"vertex {operation} returned a malformed payload",
                status=502,
                operation=operation,
            ) from e

    async def generate(self, prompt: str, references: Sequence[bytes] = ()) -> bytes:
        parsed = await self._post(
            self.build_request(prompt, references), self.config.generate_timeout_s, "generate"
        )
        reason = parsed.block_reason()
        if reason:
            raise RemoteCallError(f"Generation blocked: {reason}", status=422, operation="generate")
        image = parsed.first_image_base64()
        if image is None:
            text = parsed.first_text()
            detail = "Response contained text instead of image" if text else "No image data in response"
            raise RemoteCallError(detail, operation="generate")
        return decode_image_base64(image)

    async def probe(self) -> bool:
        """Minimal generation call; any 2xx answer counts as reachable."""
        body = {
            "contents": [{"role": "user", "parts": [{"text": "ping"}]}],
            "generationConfig": {"maxOutputTokens": 1},
        }
        try:
            await self._post(body, self.config.probe_timeout_s, "probe")
        except (RemoteCallError, httpx.HTTPError) as e:
            logger.warning("Vertex probe failed error=%s", e)
            return False
        return True
