from __future__ import annotations

import functools
import json
import logging
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import jsonschema

from ..errors import ConfigurationError, DataError, ExhaustionError, PipelineError, TransientError
from ..models import Operation
from ..utils import log_event

logger = logging.getLogger("autopress.llm")

REWRITE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "content"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "content": {"type": "string", "minLength": 1},
        "excerpt": {"type": "string"},
        "meta_description": {"type": "string"},
        "keywords": {"type": "array", "items": {"type": "string"}},
    },
}

REWRITE_SYSTEM_PROMPT = (
    "You are an editor who rewrites source material into an original, well structured "
    "article. Keep every fact accurate, never invent quotes, and write in HTML paragraphs "
    "and subheadings. Answer with a single JSON object with the keys "
    '"title", "content", "excerpt", "meta_description" and "keywords".'
)

TRANSLATE_SYSTEM_PROMPT = (
    "You are a professional translator. Translate the text into {language}. Preserve the "
    "HTML markup, names and numbers exactly. Answer with the translated text only."
)

HUMANIZE_SYSTEM_PROMPT = (
    "Rewrite the text so it reads naturally, with varied sentence length and a conversational "
    "but professional tone. Keep the meaning, facts and HTML markup. Answer with the text only."
)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class GenerationResult:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0
    model: str | None = None


@dataclass(frozen=True)
class ChatReply:
    text: str
    tokens_used: int
    model: str | None


class GenerationBackend(Protocol):
    name: str

    def supports(self, operation: str) -> bool: ...

    def rewrite(self, content: str, options: dict[str, Any]) -> GenerationResult: ...

    def translate(self, content: str, options: dict[str, Any]) -> GenerationResult: ...

    def humanize(self, content: str, options: dict[str, Any]) -> GenerationResult: ...


ChatCall = Callable[[list[dict[str, str]], dict[str, Any]], ChatReply]


class ChatBackend:
    """Generation backend built from one chat-completion wire format.

    ``options`` always carries the injected ``api_key`` and ``model``.
    """

    def __init__(self, name: str, call: ChatCall, operations: frozenset[str] | None = None) -> None:
        self.name = name
        self._call = call
        self.operations = operations or frozenset(member.value for member in Operation)

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    def rewrite(self, content: str, options: dict[str, Any]) -> GenerationResult:
        messages = [
            {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
            {"role": "user", "content": _rewrite_brief(content, options)},
        ]
        reply = self._chat(messages, options, temperature=0.7)
        parsed = _parse_json_reply(reply.text)
        metadata: dict[str, Any] = {"backend": self.name, "operation": Operation.REWRITE.value}
        if parsed is not None:
            try:
                jsonschema.validate(parsed, REWRITE_SCHEMA)
            except jsonschema.ValidationError as exc:
                log_event(logger, logging.WARNING, "rewrite_schema_invalid", backend=self.name, error=exc.message)
                parsed = None
        if parsed is None:
            metadata["structured"] = False
            if options.get("title"):
                metadata["title"] = options["title"]
            return GenerationResult(
                content=reply.text.strip(),
                metadata=metadata,
                tokens_used=reply.tokens_used,
                model=reply.model,
            )
        metadata["structured"] = True
        for key in ("title", "excerpt", "meta_description", "keywords"):
            if key in parsed:
                metadata[key] = parsed[key]
        return GenerationResult(
            content=parsed["content"].strip(),
            metadata=metadata,
            tokens_used=reply.tokens_used,
            model=reply.model,
        )

    def translate(self, content: str, options: dict[str, Any]) -> GenerationResult:
        language = str(options.get("target_language") or "").strip()
        if not language:
            raise DataError("missing_target_language", "translate needs target_language")
        messages = [
            {"role": "system", "content": TRANSLATE_SYSTEM_PROMPT.format(language=language)},
            {"role": "user", "content": content},
        ]
        reply = self._chat(messages, options, temperature=0.3)
        return GenerationResult(
            content=reply.text.strip(),
            metadata={"backend": self.name, "operation": Operation.TRANSLATE.value, "language": language},
            tokens_used=reply.tokens_used,
            model=reply.model,
        )

    def humanize(self, content: str, options: dict[str, Any]) -> GenerationResult:
        messages = [
            {"role": "system", "content": HUMANIZE_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]
        reply = self._chat(messages, options, temperature=0.8)
        return GenerationResult(
            content=reply.text.strip(),
            metadata={"backend": self.name, "operation": Operation.HUMANIZE.value},
            tokens_used=reply.tokens_used,
            model=reply.model,
        )

    def _chat(self, messages: list[dict[str, str]], options: dict[str, Any], *, temperature: float) -> ChatReply:
        if not options.get("api_key"):
            raise ConfigurationError("missing_credential", f"{self.name} call has no credential")
        if not options.get("model"):
            raise ConfigurationError("missing_model", f"{self.name} call has no model")
        merged = dict(options)
        merged.setdefault("temperature", temperature)
        return self._call(messages, merged)


def _rewrite_brief(content: str, options: dict[str, Any]) -> str:
    lines = []
    if options.get("title"):
        lines.append(f"Source title: {options['title']}")
    if options.get("source_url"):
        lines.append(f"Source URL: {options['source_url']}")
    if options.get("tone"):
        lines.append(f"Tone: {options['tone']}")
    if options.get("word_count"):
        lines.append(f"Target length: about {int(options['word_count'])} words")
    if options.get("keywords"):
        lines.append("Focus keywords: " + ", ".join(str(k) for k in options["keywords"]))
    if options.get("language"):
        lines.append(f"Write in: {options['language']}")
    lines.append("")
    lines.append("Source material:")
    lines.append(content)
    return "\n".join(lines)


def _parse_json_reply(text: str) -> dict[str, Any] | None:
    candidate = text.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", candidate, re.DOTALL)
    if fenced:
        candidate = fenced.group(1)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _openai_compatible_chat(
    messages: list[dict[str, str]], options: dict[str, Any], *, default_base_url: str
) -> ChatReply:
    base_url = options.get("base_url") or default_base_url
    payload: dict[str, Any] = {
        "model": options["model"],
        "messages": messages,
        "temperature": float(options.get("temperature", 0.7)),
    }
    if options.get("max_tokens"):
        payload["max_tokens"] = int(options["max_tokens"])
    response = _http_request(
        "POST",
        _join_url(base_url, "/chat/completions"),
        {"Authorization": f"Bearer {options['api_key']}"},
        payload,
        options,
    )
    choices = response.get("choices") or []
    if not choices:
        raise DataError("backend_invalid_response", "response has no choices", context={"raw": _preview(response)})
    text = (choices[0].get("message") or {}).get("content") or ""
    usage = response.get("usage") or {}
    return ChatReply(text=text, tokens_used=int(usage.get("total_tokens") or 0), model=response.get("model"))


def _anthropic_chat(messages: list[dict[str, str]], options: dict[str, Any]) -> ChatReply:
    base_url = options.get("base_url") or "https://api.anthropic.com/v1"
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    payload: dict[str, Any] = {
        "model": options["model"],
        "max_tokens": int(options.get("max_tokens") or 4096),
        "temperature": float(options.get("temperature", 0.7)),
        "messages": [m for m in messages if m["role"] != "system"],
    }
    if system:
        payload["system"] = system
    response = _http_request(
        "POST",
        _join_url(base_url, "/messages"),
        {"x-api-key": options["api_key"], "anthropic-version": "2023-06-01"},
        payload,
        options,
    )
    content = response.get("content") or []
    if not content:
        raise DataError("backend_invalid_response", "response has no content", context={"raw": _preview(response)})
    text = "".join(part.get("text") or "" for part in content if part.get("type", "text") == "text")
    usage = response.get("usage") or {}
    tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
    return ChatReply(text=text, tokens_used=tokens, model=response.get("model"))


def _gemini_chat(messages: list[dict[str, str]], options: dict[str, Any]) -> ChatReply:
    base_url = options.get("base_url") or "https://generativelanguage.googleapis.com/v1beta"
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    generation_config: dict[str, Any] = {"temperature": float(options.get("temperature", 0.7))}
    if options.get("max_tokens"):
        generation_config["maxOutputTokens"] = int(options["max_tokens"])
    payload: dict[str, Any] = {
        "contents": [
            {"role": "user", "parts": [{"text": m["content"]}]}
            for m in messages
            if m["role"] != "system"
        ],
        "generationConfig": generation_config,
    }
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}
    url = _join_url(base_url, f"/models/{urllib.parse.quote(options['model'])}:generateContent")
    response = _http_request("POST", url, {"x-goog-api-key": options["api_key"]}, payload, options)
    candidates = response.get("candidates") or []
    if not candidates:
        raise DataError("backend_invalid_response", "response has no candidates", context={"raw": _preview(response)})
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(part.get("text") or "" for part in parts)
    usage = response.get("usageMetadata") or {}
    return ChatReply(text=text, tokens_used=int(usage.get("totalTokenCount") or 0), model=options["model"])


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    options: dict[str, Any],
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    timeout = int(options.get("timeout_seconds") or 120)
    max_retries = int(options.get("max_retries", 2))
    backoff = float(options.get("retry_backoff_seconds", 2.0))
    last_error: PipelineError | None = None
    for attempt in range(max_retries + 1):
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Content-Type", "application/json")
        for key, value in headers.items():
            request.add_header(key, value)
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="ignore")
            if exc.code in (401, 403):
                raise ConfigurationError(
                    "backend_auth_failed",
                    f"backend rejected the credential ({exc.code})",
                    context={"status": exc.code},
                ) from exc
            if exc.code not in _RETRYABLE_STATUS:
                raise DataError(
                    "backend_rejected_request",
                    f"http_error {exc.code}: {raw[:500]}",
                    context={"status": exc.code},
                ) from exc
            if exc.code == 429:
                last_error = ExhaustionError(
                    "backend_rate_limited", f"http_error 429: {raw[:200]}", context={"status": 429}
                )
            else:
                last_error = TransientError(
                    "backend_unavailable", f"http_error {exc.code}: {raw[:200]}", context={"status": exc.code}
                )
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            last_error = TransientError("backend_unavailable", f"network_error: {exc}")
        else:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise DataError(
                    "backend_invalid_response", "response is not JSON", context={"raw": raw[:500]}
                ) from exc
            if not isinstance(parsed, dict):
                raise DataError("backend_invalid_response", "response is not an object", context={"raw": raw[:500]})
            return parsed
        if attempt < max_retries:
            delay = backoff * (2**attempt)
            log_event(logger, logging.WARNING, "backend_retry", url=_redact(url), attempt=attempt + 1, delay=delay, error=last_error.describe())
            time.sleep(delay)
    assert last_error is not None
    raise last_error


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _redact(url: str) -> str:
    parsed = urllib.parse.urlsplit(url)
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))


def _preview(response: dict[str, Any]) -> str:
    return json.dumps(response)[:500]


BACKENDS: dict[str, Callable[[], GenerationBackend]] = {
    "openai": lambda: ChatBackend(
        "openai",
        functools.partial(_openai_compatible_chat, default_base_url="https://api.openai.com/v1"),
    ),
    "deepseek": lambda: ChatBackend(
        "deepseek",
        functools.partial(_openai_compatible_chat, default_base_url="https://api.deepseek.com/v1"),
    ),
    "anthropic": lambda: ChatBackend("anthropic", _anthropic_chat),
    "gemini": lambda: ChatBackend("gemini", _gemini_chat),
}
