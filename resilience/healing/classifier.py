"""Error classification for provider failures.

Classifies already-delivered error payloads into recovery kinds:
- TOKEN_LIMIT_EXCEEDED: prompt exceeds the model context window
- NON_EMPTY_CONTENT_VIOLATION: a message in the transcript has empty content
- TOOL_RESULT_MISSING: a tool_use block has no paired tool_result
- THINKING_BLOCK_ORDER: an assistant message must start with thinking
- THINKING_DISABLED_VIOLATION: thinking blocks sent while thinking is off
- UNKNOWN: token/content-length class matched, nothing more specific found

Classification is pure: identical input always yields identical output.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from resilience.healing.model_registry import get_model_max_tokens

logger = logging.getLogger(__name__)


class RecoveryErrorKind(Enum):
    """Kinds of provider errors this layer knows how to recover from."""

    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    NON_EMPTY_CONTENT_VIOLATION = "non_empty_content_violation"
    TOOL_RESULT_MISSING = "tool_result_missing"
    THINKING_BLOCK_ORDER = "thinking_block_order"
    THINKING_DISABLED_VIOLATION = "thinking_disabled_violation"
    UNKNOWN = "unknown"


# Kinds fixed by editing the stored transcript rather than by compaction
STRUCTURAL_KINDS = frozenset(
    {
        RecoveryErrorKind.TOOL_RESULT_MISSING,
        RecoveryErrorKind.THINKING_BLOCK_ORDER,
        RecoveryErrorKind.THINKING_DISABLED_VIOLATION,
    }
)

# Kinds handled by the compaction orchestrator
COMPACTION_KINDS = frozenset(
    {
        RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED,
        RecoveryErrorKind.NON_EMPTY_CONTENT_VIOLATION,
        RecoveryErrorKind.UNKNOWN,
    }
)


@dataclass(frozen=True)
class ParsedRecoveryError:
    """Classified provider error with extracted numeric fields.

    Attributes:
        kind: Recovery kind
        current_tokens: Prompt size reported by the provider (0 if unknown)
        max_tokens: Context window (from the error or the model registry)
        message_index: Transcript ordinal referenced as ``messages.<N>``
        provider_id: Provider the failing request went to
        model_id: Model the failing request went to
        request_id: Provider request id, when the envelope carries one
        error_type: Finer provider-specific sub-type

    """

    kind: RecoveryErrorKind
    current_tokens: int = 0
    max_tokens: int = 0
    message_index: int | None = None
    provider_id: str | None = None
    model_id: str | None = None
    request_id: str | None = None
    error_type: str = ""

    @property
    def is_structural(self) -> bool:
        return self.kind in STRUCTURAL_KINDS


class ErrorClassifier:
    """Classifies raw error payloads for recovery.

    Accepts plain strings, exceptions, or dict-shaped errors whose layout
    varies by transport (HTTP envelope, SDK error, nested ``{error: {message}}``).

    Example:
        classifier = ErrorClassifier()
        parsed = classifier.classify("prompt is too long: 250000 tokens > 200000 maximum")
        if parsed and parsed.kind == RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED:
            # truncate / compact and retry

    """

    # Ordered: first match wins
    TOKEN_LIMIT_PATTERNS = [
        r"(\d+)\s*tokens?\s*>\s*(\d+)\s*maximum",
        r"prompt.*?(\d+).*?tokens.*?exceeds.*?(\d+)",
        r"(\d+).*?tokens.*?limit.*?(\d+)",
        r"context.*?length.*?(\d+).*?maximum.*?(\d+)",
        r"max.*?context.*?(\d+).*?but.*?(\d+)",
    ]

    TOKEN_LIMIT_KEYWORDS = [
        "prompt is too long",
        "is too long",
        "context_length_exceeded",
        "max_tokens",
        "token limit",
        "context length",
        "too many tokens",
        "non-empty content",
    ]

    # JSON error blobs embedded in a response body, most specific first
    ENVELOPE_PATTERNS = [
        (r"data:\s*(\{[\s\S]*?\})\s*$", re.MULTILINE),
        (r"(\{\"type\"\s*:\s*\"error\"[\s\S]*?\})", 0),
        (r"(\{[\s\S]*?\"error\"[\s\S]*?\})", 0),
    ]

    MESSAGE_INDEX_PATTERN = r"messages\.(\d+)"

    NON_EMPTY_CONTENT = "non-empty content"

    def __init__(self):
        """Initialize classifier with compiled patterns."""
        self._token_patterns = [re.compile(p, re.IGNORECASE) for p in self.TOKEN_LIMIT_PATTERNS]
        self._envelope_patterns = [re.compile(p, flags) for p, flags in self.ENVELOPE_PATTERNS]
        self._message_index = re.compile(self.MESSAGE_INDEX_PATTERN)

    def classify(
        self,
        error: Any,
        provider_id: str | None = None,
        model_id: str | None = None,
    ) -> ParsedRecoveryError | None:
        """Classify an error payload.

        Args:
            error: String, exception, or dict-shaped error
            provider_id: Provider of the failing request (registry fallback)
            model_id: Model of the failing request (registry fallback)

        Returns:
            ParsedRecoveryError, or None when the error is not recoverable here

        """
        if error is None:
            return None

        structural = self._classify_structural(error, provider_id, model_id)
        if structural:
            return structural

        if isinstance(error, str):
            return self._classify_string(error, provider_id, model_id)

        if isinstance(error, BaseException):
            payload = self._exception_payload(error)
            if isinstance(payload, str):
                return self._classify_string(payload, provider_id, model_id)
            return self._classify_object(payload, provider_id, model_id)

        if isinstance(error, dict):
            return self._classify_object(error, provider_id, model_id)

        return None

    # ------------------------------------------------------------------
    # Structural errors (transcript shape)
    # ------------------------------------------------------------------

    def _classify_structural(
        self,
        error: Any,
        provider_id: str | None,
        model_id: str | None,
    ) -> ParsedRecoveryError | None:
        message = primary_error_message(error)
        if not message:
            return None

        kind = None
        if "tool_use" in message and "tool_result" in message:
            kind = RecoveryErrorKind.TOOL_RESULT_MISSING
        elif "thinking" in message and (
            "first block" in message
            or "must start with" in message
            or "preceeding" in message
            or ("expected" in message and "found" in message)
        ):
            kind = RecoveryErrorKind.THINKING_BLOCK_ORDER
        elif "thinking is disabled" in message and "cannot contain" in message:
            kind = RecoveryErrorKind.THINKING_DISABLED_VIOLATION

        if kind is None:
            return None

        return ParsedRecoveryError(
            kind=kind,
            message_index=self._extract_message_index(message),
            provider_id=provider_id,
            model_id=model_id,
            error_type=kind.value,
        )

    # ------------------------------------------------------------------
    # Token / content-length errors
    # ------------------------------------------------------------------

    def _classify_string(
        self,
        text: str,
        provider_id: str | None,
        model_id: str | None,
    ) -> ParsedRecoveryError | None:
        if self.NON_EMPTY_CONTENT in text.lower():
            return ParsedRecoveryError(
                kind=RecoveryErrorKind.NON_EMPTY_CONTENT_VIOLATION,
                max_tokens=self._fallback_max_tokens(provider_id, model_id),
                message_index=self._extract_message_index(text),
                provider_id=provider_id,
                model_id=model_id,
                error_type="non-empty content",
            )

        if not self.is_token_limit_text(text):
            return None

        tokens = self.extract_tokens(text)
        return ParsedRecoveryError(
            kind=RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED,
            current_tokens=tokens[0] if tokens else 0,
            max_tokens=tokens[1] if tokens else self._fallback_max_tokens(provider_id, model_id),
            provider_id=provider_id,
            model_id=model_id,
            error_type="token_limit_exceeded_string",
        )

    def _classify_object(
        self,
        err: dict,
        provider_id: str | None,
        model_id: str | None,
    ) -> ParsedRecoveryError | None:
        sources = gather_text_sources(err)

        if not sources:
            try:
                serialized = json.dumps(err, default=str)
            except (TypeError, ValueError):
                serialized = ""
            if serialized and self.is_token_limit_text(serialized):
                sources.append(serialized)

        combined = " ".join(sources)
        if not self.is_token_limit_text(combined):
            return None

        data = err.get("data") if isinstance(err.get("data"), dict) else {}
        response_body = data.get("responseBody")
        if isinstance(response_body, str):
            parsed = self._classify_response_body(response_body, provider_id, model_id)
            if parsed:
                return parsed

        for text in sources:
            tokens = self.extract_tokens(text)
            if tokens:
                return ParsedRecoveryError(
                    kind=RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED,
                    current_tokens=tokens[0],
                    max_tokens=tokens[1],
                    provider_id=provider_id,
                    model_id=model_id,
                    error_type="token_limit_exceeded",
                )

        if self.NON_EMPTY_CONTENT in combined.lower():
            return ParsedRecoveryError(
                kind=RecoveryErrorKind.NON_EMPTY_CONTENT_VIOLATION,
                max_tokens=self._fallback_max_tokens(provider_id, model_id),
                message_index=self._extract_message_index(combined),
                provider_id=provider_id,
                model_id=model_id,
                error_type="non-empty content",
            )

        return ParsedRecoveryError(
            kind=RecoveryErrorKind.UNKNOWN,
            max_tokens=self._fallback_max_tokens(provider_id, model_id),
            provider_id=provider_id,
            model_id=model_id,
            error_type="token_limit_exceeded_unknown",
        )

    def _classify_response_body(
        self,
        body: str,
        provider_id: str | None,
        model_id: str | None,
    ) -> ParsedRecoveryError | None:
        """Parse provider error envelopes embedded in a response body."""
        decoder = json.JSONDecoder()
        for pattern in self._envelope_patterns:
            match = pattern.search(body)
            if not match:
                continue
            try:
                envelope, _ = decoder.raw_decode(body, match.start(1))
            except ValueError:
                continue
            if not isinstance(envelope, dict):
                continue
            error_obj = envelope.get("error") if isinstance(envelope.get("error"), dict) else {}
            tokens = self.extract_tokens(str(error_obj.get("message") or ""))
            if tokens:
                return ParsedRecoveryError(
                    kind=RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED,
                    current_tokens=tokens[0],
                    max_tokens=tokens[1],
                    provider_id=provider_id,
                    model_id=model_id,
                    request_id=envelope.get("request_id"),
                    error_type=error_obj.get("type") or "token_limit_exceeded",
                )

        try:
            whole = json.loads(body)
        except ValueError:
            return None
        if isinstance(whole, dict) and isinstance(whole.get("message"), str):
            if self.is_token_limit_text(whole["message"]):
                return ParsedRecoveryError(
                    kind=RecoveryErrorKind.TOKEN_LIMIT_EXCEEDED,
                    max_tokens=self._fallback_max_tokens(provider_id, model_id),
                    provider_id=provider_id,
                    model_id=model_id,
                    error_type="bedrock_input_too_long",
                )
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def is_token_limit_text(self, text: str) -> bool:
        """Check if text mentions a token/content-length class of failure."""
        lower = text.lower()
        return any(keyword in lower for keyword in self.TOKEN_LIMIT_KEYWORDS)

    def extract_tokens(self, text: str) -> tuple[int, int] | None:
        """Extract (current, max) token counts; larger number is current.

        Returns:
            Tuple of (current_tokens, max_tokens), or None if no pattern matches

        """
        for pattern in self._token_patterns:
            match = pattern.search(text)
            if match:
                first, second = int(match.group(1)), int(match.group(2))
                return (first, second) if first > second else (second, first)
        return None

    def _extract_message_index(self, text: str) -> int | None:
        match = self._message_index.search(text)
        return int(match.group(1)) if match else None

    @staticmethod
    def _fallback_max_tokens(provider_id: str | None, model_id: str | None) -> int:
        return get_model_max_tokens(provider_id, model_id) or 0

    @staticmethod
    def _exception_payload(error: BaseException) -> str | dict:
        """Reduce an exception to the payload shape the classifier handles."""
        for arg in error.args:
            if isinstance(arg, dict):
                return arg
        payload: dict[str, Any] = {"message": str(error)}
        for attr in ("body", "details", "reason", "description"):
            value = getattr(error, attr, None)
            if isinstance(value, str):
                payload[attr] = value
            elif attr == "body" and isinstance(value, dict):
                payload["error"] = value.get("error", value)
        if len(payload) == 1:
            return payload["message"]
        return payload


def gather_text_sources(err: dict) -> list[str]:
    """Collect every string field that may hold a human-readable message."""
    data = err.get("data") if isinstance(err.get("data"), dict) else {}
    error_data = err.get("error") if isinstance(err.get("error"), dict) else {}
    nested = error_data.get("error") if isinstance(error_data.get("error"), dict) else {}

    candidates = [
        data.get("responseBody"),
        err.get("message"),
        error_data.get("message"),
        err.get("body"),
        err.get("details"),
        err.get("reason"),
        err.get("description"),
        nested.get("message"),
        data.get("message"),
        data.get("error"),
    ]
    if isinstance(err.get("error"), str):
        candidates.append(err["error"])
    return [c for c in candidates if isinstance(c, str)]


def primary_error_message(error: Any) -> str:
    """Lower-cased primary message of an error payload ("" if none)."""
    if not error:
        return ""
    if isinstance(error, str):
        return error.lower()
    if isinstance(error, BaseException):
        return str(error).lower()
    if isinstance(error, dict):
        data = error.get("data")
        paths = [
            data,
            error.get("error"),
            error,
            data.get("error") if isinstance(data, dict) else None,
        ]
        for obj in paths:
            if isinstance(obj, dict):
                message = obj.get("message")
                if isinstance(message, str) and message:
                    return message.lower()
    try:
        return json.dumps(error, default=str).lower()
    except (TypeError, ValueError):
        return ""


ABORT_WORDS_PATTERN = re.compile(r"\b(?:abort|aborted|cancell?ed|interrupted)\b", re.IGNORECASE)


def is_abort_error(error: Any) -> bool:
    """Check if an error payload describes a user/system abort.

    Free text only counts on whole words, so "cancellation" or "interrupts"
    in an unrelated error do not suppress anything.
    """
    if not error:
        return False

    if isinstance(error, dict):
        name = error.get("name")
        message = str(error.get("message") or "")
        if name in ("MessageAbortedError", "AbortError"):
            return True
        if name == "DOMException" and "abort" in message.lower():
            return True
        return bool(ABORT_WORDS_PATTERN.search(message))

    if isinstance(error, BaseException):
        if type(error).__name__ in ("MessageAbortedError", "AbortError", "CancelledError"):
            return True
        error = str(error)

    if isinstance(error, str):
        return bool(ABORT_WORDS_PATTERN.search(error))

    return False


_default_classifier = ErrorClassifier()


def classify(
    error: Any,
    provider_id: str | None = None,
    model_id: str | None = None,
) -> ParsedRecoveryError | None:
    """Classify an error payload with the shared classifier instance."""
    return _default_classifier.classify(error, provider_id, model_id)
