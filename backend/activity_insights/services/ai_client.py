"""
Analysis model client — Oracle OCI request-signing first, Anthropic second.

Primary provider:
  Oracle Generative AI Inference via OCI SDK + signed requests using ~/.oci/config.

Fallback provider:
  Anthropic (only when OCI is not configured).

There is no stub reply and no retry here: any failure is raised as
ModelClientError and the caller decides what to do with it.
"""

import asyncio
import json
import logging
from pathlib import Path

import oci

from activity_insights.config import Settings

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are a teaching assistant that analyzes student activity data and "
    "reports actionable findings to the course instructor in markdown."
)


class ModelClientError(RuntimeError):
    """Raised when the model provider is missing, fails, or returns nothing."""


# ─────────────────────────────────────────────────────────────────────────────
# Request / response builders
# ─────────────────────────────────────────────────────────────────────────────

def _is_cohere(model_id: str, api_format: str) -> bool:
    forced = api_format.strip().upper()
    if forced == "COHERE":
        return True
    if forced == "GENERIC":
        return False
    return model_id.lower().startswith("cohere.")


def build_chat_body(
    settings: Settings,
    system: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
) -> dict:
    """Build JSON body for POST /20231130/actions/chat."""
    model_id = settings.ORACLE_GENAI_MODEL

    serving_mode = {"servingType": "ON_DEMAND", "modelId": model_id}

    if _is_cohere(model_id, settings.ORACLE_GENAI_API_FORMAT):
        chat_req: dict = {
            "apiFormat": "COHERE",
            "message": prompt,
            "maxTokens": max_tokens,
            "temperature": temperature,
            "isStream": False,
        }
        if system:
            chat_req["preambleOverride"] = system
    else:
        chat_req = {
            "apiFormat": "GENERIC",
            "messages": [{
                "role": "USER",
                "content": [{"type": "TEXT", "text": prompt}],
            }],
            "maxTokens": max_tokens,
            "temperature": temperature,
            "isStream": False,
        }
        if system:
            chat_req["systemMessage"] = system

    body: dict = {"servingMode": serving_mode, "chatRequest": chat_req}
    if settings.ORACLE_GENAI_COMPARTMENT_ID:
        body["compartmentId"] = settings.ORACLE_GENAI_COMPARTMENT_ID
    return body


def extract_text(response_json: dict) -> str:
    """Pull plain text from an /actions/chat response."""
    chat_resp = response_json.get("chatResponse", {})
    fmt = chat_resp.get("apiFormat", "GENERIC")
    if fmt == "COHERE":
        return chat_resp.get("text", "")
    choices = chat_resp.get("choices", [])
    if not choices:
        return ""
    content = choices[0].get("message", {}).get("content", [])
    if isinstance(content, list) and content:
        return content[0].get("text", "")
    return str(content)


class AnalysisModelClient:
    """Sends one prompt to the configured generative model and returns markdown."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # ── Status helpers ────────────────────────────────────────────────────────

    def _oracle_configured(self) -> bool:
        s = self.settings
        return bool(s.OCI_CONFIG_FILE and s.OCI_CONFIG_PROFILE and s.ORACLE_GENAI_MODEL and s.ORACLE_GENAI_COMPARTMENT_ID)

    def _anthropic_configured(self) -> bool:
        return bool(self.settings.ANTHROPIC_API_KEY)

    @property
    def provider_name(self) -> str:
        if self._oracle_configured():
            return "oracle-genai"
        if self._anthropic_configured():
            return "anthropic"
        return "none"

    @property
    def model_name(self) -> str:
        if self._oracle_configured():
            return self.settings.ORACLE_GENAI_MODEL
        if self._anthropic_configured():
            return self.settings.ANTHROPIC_MODEL
        return "none"

    # ── Oracle GenAI — OCI signed requests ────────────────────────────────────

    def _oci_config(self) -> dict:
        cfg_file = str(Path(self.settings.OCI_CONFIG_FILE).expanduser())
        return oci.config.from_file(file_location=cfg_file, profile_name=self.settings.OCI_CONFIG_PROFILE)

    def _oci_endpoint(self, cfg: dict) -> str:
        if self.settings.ORACLE_GENAI_BASE_URL:
            return self.settings.ORACLE_GENAI_BASE_URL.rstrip("/")
        region = cfg.get("region", "us-chicago-1")
        return f"https://inference.generativeai.{region}.oci.oraclecloud.com"

    def _oci_post(self, path: str, body: dict, timeout: tuple = (10.0, 300.0)) -> dict:
        """Perform a signed POST request via OCI base client and return JSON dict.

        Args:
            timeout: (connect_timeout, read_timeout) in seconds.
                     Long read timeout covers multi-thousand-token analyses.
        """
        cfg = self._oci_config()
        client = oci.generative_ai_inference.GenerativeAiInferenceClient(
            config=cfg,
            service_endpoint=self._oci_endpoint(cfg),
            timeout=timeout,
        )
        response = client.base_client.call_api(
            resource_path=path,
            method="POST",
            header_params={"content-type": "application/json"},
            body=body,
            response_type="str",
        )
        text = response.data if isinstance(response.data, str) else str(response.data)
        return json.loads(text)

    async def _oracle_generate(self, prompt: str, max_tokens: int) -> str:
        body = build_chat_body(
            self.settings,
            ANALYSIS_SYSTEM_PROMPT,
            prompt,
            max_tokens,
            self.settings.ANALYSIS_TEMPERATURE,
        )
        # OCI SDK already prefixes the API version path (/20231130).
        data = await asyncio.to_thread(self._oci_post, "/actions/chat", body)
        return extract_text(data)

    # ── Anthropic ─────────────────────────────────────────────────────────────

    def _anthropic_call(self, prompt: str, max_tokens: int) -> str:
        import anthropic

        client = anthropic.Anthropic(api_key=self.settings.ANTHROPIC_API_KEY)
        response = client.messages.create(
            model=self.settings.ANTHROPIC_MODEL,
            max_tokens=max_tokens,
            system=ANALYSIS_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.settings.ANALYSIS_TEMPERATURE,
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    async def _anthropic_generate(self, prompt: str, max_tokens: int) -> str:
        return await asyncio.to_thread(self._anthropic_call, prompt, max_tokens)

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(self, prompt: str, max_tokens: int) -> str:
        """
        Send one prompt and return the model's markdown.

        Provider priority:
          1. Oracle GenAI (OCI signed) — when OCI config + compartment + model are set
          2. Anthropic     — when ANTHROPIC_API_KEY is set
        Oracle failures are surfaced, never silently retried on Anthropic.
        """
        if self._oracle_configured():
            call = self._oracle_generate
        elif self._anthropic_configured():
            call = self._anthropic_generate
        else:
            raise ModelClientError(
                "No analysis model configured: set ORACLE_GENAI_COMPARTMENT_ID "
                "(with OCI config) or ANTHROPIC_API_KEY."
            )

        try:
            text = await call(prompt, max_tokens)
        except Exception as e:
            raise ModelClientError(f"{self.provider_name} error: {e}") from e

        if not text or not text.strip():
            raise ModelClientError(f"{self.provider_name} returned an empty analysis")
        return text

    async def health_check(self) -> dict:
        """Live connectivity test with a tiny prompt."""
        provider = self.provider_name
        if provider == "none":
            return {
                "provider": "none",
                "status": "unconfigured",
                "message": (
                    "Set OCI_CONFIG_FILE, OCI_CONFIG_PROFILE, ORACLE_GENAI_COMPARTMENT_ID "
                    "and ORACLE_GENAI_MODEL, or ANTHROPIC_API_KEY."
                ),
            }

        try:
            reply = await self.generate("Reply with exactly: OK", max_tokens=10)
            return {"provider": provider, "model": self.model_name, "status": "ok", "test_reply": reply.strip()}
        except ModelClientError as e:
            return {"provider": provider, "model": self.model_name, "status": "error", "error": str(e)}
