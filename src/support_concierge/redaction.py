from __future__ import annotations

import logging
import re
from collections.abc import Iterable

logger = logging.getLogger(__name__)

REDACTION_PLACEHOLDER = "[REDACTED]"

# Long hex digests and opaque tokens; ordinary prose never contains 32+ char runs.
_HEX_TOKEN = re.compile(r"\b[a-fA-F0-9]{32,}\b")
_OPAQUE_TOKEN = re.compile(r"\b[A-Za-z0-9_\-]{40,}\b")


class SecretRedactor:
    """Masks credentials in user text before it is sent to a language model."""

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns = [re.compile(pattern, re.IGNORECASE) for pattern in patterns]

    def redact(self, text: str | None) -> tuple[str, list[str]]:
        """Return the redacted text and a short description of each finding.

        Findings only carry a four character preview so the log never holds a
        usable secret.
        """
        if not text or not text.strip():
            return text or "", []
        findings: list[str] = []
        redacted = text
        for pattern in [*self._patterns, _HEX_TOKEN, _OPAQUE_TOKEN]:
            for match in pattern.finditer(redacted):
                value = match.group(0)
                if not value.strip() or value == REDACTION_PLACEHOLDER:
                    continue
                findings.append(f"{pattern.pattern[:24]}: {value[:4]}...")
            redacted = pattern.sub(REDACTION_PLACEHOLDER, redacted)
        if findings:
            logger.info("Redacted %d secret-like value(s) before model call", len(findings))
        return redacted, findings

    def redact_text(self, text: str | None) -> str:
        return self.redact(text)[0]
