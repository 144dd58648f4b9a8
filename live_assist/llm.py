"""Gemini ``generateContent`` client answering audio, screenshot and text turns."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import GeminiSettings, LoggingSettings
from .errors import CaptureError, ConfigurationError, UpstreamError
from .gemini_api import UPLOAD_URL, GeminiRestClient
from .models import MODEL_ROLE, USER_ROLE, HistoryTurn
from .utils import clamp, truncate

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "GEMINI_API_KEY is not set on the PC."

DEFAULT_SYSTEM_PROMPT = (
    "You are a live-call teleprompter. Give a short, speakable answer. Provide 1-2 variants "
    "(one concise, one slightly longer). Then add 2-4 bullet points of what to say or ask next. "
    "If context is missing, ask exactly one clarifying question and give a neutral filler line. "
    "Be concise and practical. No meta commentary. If the task requires code, first give a brief, "
    "professional explanation of the solution, then output a separate Python code block."
)
AUDIO_INSTRUCTIONS = (
    "You will receive two audio inputs: MIC (me) and SYSTEM (the other person). Use both to understand "
    "the context and answer as a live-call teleprompter. Do NOT return transcripts or JSON. "
    "Return only the final answer."
)
AUDIO_PROMPT = (
    "You are given two audios: microphone (mic) and system audio (system). Use them to understand the "
    "conversation and provide the best possible reply. Return only the final answer."
)
SCREENSHOT_PROMPT = "Here is a screenshot. Help me understand what is on screen and what to reply."
TOOL_HINT = (
    "File Search tool is available. You MUST use it before answering. "
    "If it returns no useful results, answer from general knowledge without refusing."
)
RAG_HEADER = "REFERENCE CONTEXT (use only if relevant):\n"

INLINE_MAX_ENCODED_BYTES = 20 * 1024 * 1024
TEMPERATURE = 0.2

_THINKING_LEVELS = {
    "minimal": "MINIMAL",
    "min": "MINIMAL",
    "off": "MINIMAL",
    "low": "LOW",
    "medium": "MEDIUM",
    "med": "MEDIUM",
    "high": "HIGH",
}


def normalize_thinking_level(level: Optional[str]) -> Optional[str]:
    if not level:
        return None
    return _THINKING_LEVELS.get(level.strip().lower())


def build_contents(history: Sequence[HistoryTurn], current_parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    contents = []
    for turn in history:
        if not turn.text.strip():
            continue
        role = MODEL_ROLE if turn.role == MODEL_ROLE else USER_ROLE
        contents.append({"role": role, "parts": [{"text": turn.text}]})
    contents.append({"role": USER_ROLE, "parts": current_parts})
    return contents


def extract_text(body: Dict[str, Any]) -> str:
    """Concatenated text parts of the first candidate that has any."""

    for candidate in body.get("candidates") or []:
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part["text"] for part in parts if isinstance(part.get("text"), str))
        if text:
            return text
    return ""


def with_rag_block(prompt: str, rag_context: Optional[str]) -> str:
    if not rag_context or not rag_context.strip():
        return prompt
    return f"{RAG_HEADER}{rag_context}\n\n{prompt}"


class GeminiClient:
    """LLM collaborator: one request per assist operation, text answer back."""

    def __init__(
        self,
        settings: GeminiSettings,
        log_settings: Optional[LoggingSettings] = None,
        *,
        rest: Optional[GeminiRestClient] = None,
    ) -> None:
        self.settings = settings
        log_settings = log_settings or LoggingSettings()
        self.verbose = log_settings.verbose
        self.max_text_chars = int(clamp(log_settings.max_text_chars, 200, 8000))
        self.max_output_tokens = int(clamp(settings.answer_max_output_tokens, 256, 8192))
        self._rest = rest or GeminiRestClient(settings.api_key, timeout=settings.timeout_seconds)

    @property
    def is_configured(self) -> bool:
        return self._rest.is_configured

    def _log(self, message: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, message, *args)

    def _system_prompt(self, extra: Optional[str] = None, *, tools: bool = False) -> str:
        prompt = (self.settings.system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT
        if self.settings.response_language:
            prompt += f"\n\nAnswer in the language: {self.settings.response_language.strip()}."
        if extra:
            prompt += "\n\n" + extra
        if tools:
            prompt += "\n\n" + TOOL_HINT
        return prompt

    def _generation_config(self, model: str) -> Dict[str, Any]:
        config: Dict[str, Any] = {"temperature": TEMPERATURE, "maxOutputTokens": self.max_output_tokens}
        level = normalize_thinking_level(self.settings.thinking_level)
        if level is None:
            return config
        model_lower = model.lower()
        if "2.5" in model_lower:
            self._log("ThinkingLevel ignored for Gemini 2.5 models.")
            return config
        if "pro" in model_lower and level in {"MINIMAL", "MEDIUM"}:
            self._log("ThinkingLevel %s not supported by Gemini Pro models. Using LOW.", level)
            level = "LOW"
        config["thinkingConfig"] = {"thinkingLevel": level}
        return config

    def _ensure_configured(self) -> None:
        if not self.is_configured:
            raise ConfigurationError(MISSING_KEY_MESSAGE)

    async def answer_audio(
        self,
        mic_path: Path,
        system_path: Path,
        history: Sequence[HistoryTurn],
        *,
        mic_silent: bool,
        system_silent: bool,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        self._ensure_configured()
        self._log("Answer from audio. mic_silent=%s, system_silent=%s, history=%d", mic_silent, system_silent, len(history))
        parts: List[Dict[str, Any]] = [{"text": AUDIO_PROMPT}]
        if rag_context and rag_context.strip():
            parts.append({"text": RAG_HEADER + rag_context})
        for label, path, silent in (("MIC", mic_path, mic_silent), ("SYSTEM", system_path, system_silent)):
            if silent:
                parts.append({"text": f"{label} AUDIO: missing (silence)."})
                continue
            data = await self._read(path)
            self._log("Audio %s bytes: %d", label.lower(), len(data))
            parts.append({"text": f"{label} AUDIO:"})
            parts.append(await self._audio_part(data, "audio/wav", Path(path).stem))
        payload = {
            "system_instruction": {"parts": [{"text": self._system_prompt(AUDIO_INSTRUCTIONS, tools=bool(rag_tools))}]},
            "contents": build_contents(history, parts),
        }
        return await self._generate(self.settings.audio_model, payload, rag_tools, "audio+answer")

    async def answer_screenshot(
        self,
        path: Path,
        history: Sequence[HistoryTurn],
        *,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        self._ensure_configured()
        data = await self._read(path)
        self._log("Screenshot analysis: %s (%d bytes), history=%d", Path(path).name, len(data), len(history))
        parts = [
            {"text": with_rag_block(SCREENSHOT_PROMPT, rag_context)},
            {"inline_data": {"mime_type": "image/png", "data": base64.b64encode(data).decode("ascii")}},
        ]
        payload = {
            "system_instruction": {"parts": [{"text": self._system_prompt(tools=bool(rag_tools))}]},
            "contents": build_contents(history, parts),
        }
        return await self._generate(self.settings.vision_model, payload, rag_tools, "screenshot")

    async def answer_follow_up(
        self,
        text: str,
        history: Sequence[HistoryTurn],
        *,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        self._ensure_configured()
        self._log("Follow-up request chars=%d, history=%d", len(text), len(history))
        parts = [{"text": with_rag_block(f"User follow-up:\n{text}", rag_context)}]
        payload = {
            "system_instruction": {"parts": [{"text": self._system_prompt(tools=bool(rag_tools))}]},
            "contents": build_contents(history, parts),
        }
        return await self._generate(self.settings.model, payload, rag_tools, "followup")

    async def _read(self, path: Path) -> bytes:
        try:
            return await asyncio.to_thread(Path(path).read_bytes)
        except OSError as exc:
            raise CaptureError(f"Cannot read capture artifact {Path(path).name}: {exc}") from exc

    async def _audio_part(self, data: bytes, mime_type: str, display_name: str) -> Dict[str, Any]:
        if ((len(data) + 2) // 3) * 4 <= INLINE_MAX_ENCODED_BYTES:
            return {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(data).decode("ascii")}}
        self._log("Uploading audio to Gemini Files API (%d bytes)...", len(data))
        body = await self._rest.resumable_upload(
            f"{UPLOAD_URL}files", data, mime_type, {"file": {"display_name": display_name}}
        )
        uploaded = body.get("file") or {}
        uri = uploaded.get("uri")
        if not uri:
            raise UpstreamError("Gemini file upload did not return a file URI.")
        self._log("Upload complete. File URI: %s", uri)
        return {"file_data": {"mime_type": uploaded.get("mimeType") or mime_type, "file_uri": uri}}

    async def _generate(
        self,
        model: str,
        payload: Dict[str, Any],
        rag_tools: Optional[List[Dict[str, Any]]],
        operation: str,
    ) -> str:
        payload["generationConfig"] = self._generation_config(model)
        if rag_tools:
            self._log("RAG tools attached to request (file search).")
            payload["tools"] = rag_tools
        self._log(
            "Gemini %s generateContent: model=%s, payloadBytes=%d",
            operation,
            model,
            len(json.dumps(payload).encode("utf-8")),
        )
        started = time.perf_counter()
        body = await self._rest.post_json(f"models/{model}:generateContent", payload)
        elapsed = time.perf_counter() - started
        text = extract_text(body)
        if not text.strip():
            feedback = body.get("promptFeedback") or {}
            self._log("Gemini %s blockReason=%s raw=%s", operation, feedback.get("blockReason"), truncate(json.dumps(body), self.max_text_chars))
            raise UpstreamError(
                f"Gemini returned an empty response for {operation}. Try a different model or a shorter prompt."
            )
        self._log("Gemini %s response in %.0f ms, chars=%d", operation, elapsed * 1000, len(text))
        self._log("Gemini %s preview: %s", operation, truncate(text, self.max_text_chars))
        return text

    async def aclose(self) -> None:
        await self._rest.aclose()
