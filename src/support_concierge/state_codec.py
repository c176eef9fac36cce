"""Embed and recover ``ConversationState`` inside human-readable comment text.

A bot reply carries its state as a trailing fenced block::

    <visible reply>

    ```supportbot-state
    {"category":"build",...}
    ```

Payloads larger than the compression threshold are gzip-compressed and base64
encoded behind a ``compressed:`` prefix. Older threads used an HTML comment
(``<!-- supportbot-state ... -->`` or ``<!-- supportbot_state:... -->``), which
is still accepted on decode and removed on strip.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import logging
import re
import zlib
from collections.abc import Iterable

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import Comment, ConversationState

logger = logging.getLogger(__name__)

FENCE_OPEN = "```supportbot-state\n"
FENCE_CLOSE = "\n```"
COMPRESSED_PREFIX = "compressed:"
DEFAULT_COMPRESSION_THRESHOLD = 2_000
DEFAULT_MAX_ASKED_FIELDS = 20

# Serialized payloads never contain a backtick or angle bracket, so neither a
# fence nor an HTML comment can open or close inside the data.
_MARKUP_ESCAPES = str.maketrans({"`": "\\u0060", "<": "\\u003c", ">": "\\u003e"})
_FENCED_MARKER = re.compile(r"```supportbot-state[ \t]*\r?\n(?P<data>(?:(?!```).)*?)\r?\n```", re.DOTALL)
_HTML_MARKER = re.compile(r"<!--\s*supportbot[-_]state\s*:?\s*(?P<data>(?:(?!<!--).)+?)\s*-->", re.DOTALL)
_MARKERS = (_FENCED_MARKER, _HTML_MARKER)


class StateCodec:
    """Serialize state into a comment body and read it back."""

    def __init__(
        self,
        *,
        compression_threshold_bytes: int = DEFAULT_COMPRESSION_THRESHOLD,
        max_asked_fields: int = DEFAULT_MAX_ASKED_FIELDS,
    ) -> None:
        if compression_threshold_bytes <= 0:
            raise ValueError("compression_threshold_bytes must be positive")
        if max_asked_fields <= 0:
            raise ValueError("max_asked_fields must be positive")
        self.compression_threshold_bytes = compression_threshold_bytes
        self.max_asked_fields = max_asked_fields

    def serialize(self, state: ConversationState) -> str:
        """Return the marker payload: canonical JSON, or the compressed form when too large.

        Markup characters only occur inside JSON strings, where the \\u escape reads
        back as the same character.
        """
        payload = to_canonical_json(state).translate(_MARKUP_ESCAPES)
        raw = payload.encode("utf-8")
        if len(raw) <= self.compression_threshold_bytes:
            return payload
        compressed = gzip.compress(raw, mtime=0)
        return COMPRESSED_PREFIX + base64.b64encode(compressed).decode("ascii")

    def encode(self, prior_text: str, state: ConversationState) -> str:
        """Append a fresh state block to ``prior_text`` after removing any existing blocks."""
        block = f"{FENCE_OPEN}{self.serialize(state)}{FENCE_CLOSE}"
        cleaned = self.strip(prior_text)
        if not cleaned:
            return block
        return f"{cleaned}\n\n{block}"

    def decode(self, text: str | None) -> ConversationState | None:
        """Recover the state from the last marker in ``text``.

        Returns None when no marker exists or the last one cannot be read; the
        caller then starts the ticket fresh.
        """
        if not text:
            return None
        match = _last_marker(text)
        if match is None:
            return None
        data = match.group("data").strip()
        try:
            if data[: len(COMPRESSED_PREFIX)].lower() == COMPRESSED_PREFIX:
                encoded = "".join(data[len(COMPRESSED_PREFIX):].split())
                data = gzip.decompress(base64.b64decode(encoded, validate=True)).decode("utf-8")
            return ConversationState.model_validate_json(data)
        except (ValidationError, binascii.Error, ValueError, OSError, EOFError, zlib.error) as exc:
            logger.warning("Discarding unreadable state marker: %s", exc)
            return None

    @staticmethod
    def strip(text: str | None) -> str:
        """Remove every state block, primary or legacy, and trim the remainder."""
        if not text:
            return ""
        cleaned = text
        for pattern in _MARKERS:
            cleaned = pattern.sub("", cleaned)
        return cleaned.strip()

    @staticmethod
    def has_marker(text: str | None) -> bool:
        return bool(text) and _last_marker(text) is not None

    def prune(self, state: ConversationState, max_asked_fields: int | None = None) -> ConversationState:
        """Return a copy keeping only the most recent asked fields for every participant."""
        limit = self.max_asked_fields if max_asked_fields is None else max_asked_fields
        if limit <= 0:
            raise ValueError("max_asked_fields must be positive")
        pruned = state.model_copy(deep=True)
        for conversation in pruned.user_conversations.values():
            if len(conversation.asked_fields) > limit:
                conversation.asked_fields = conversation.asked_fields[-limit:]
        return pruned

    def find_latest_state(
        self,
        comments: Iterable[Comment],
        bot_username: str,
    ) -> tuple[ConversationState | None, int | None]:
        """Find the newest readable state written by the bot.

        Comments by anyone else are ignored, so a participant quoting or forging a
        marker cannot inject state.

        Returns:
            ``(state, comment_id)``, or ``(None, None)`` when the thread has none.
        """
        bot = bot_username.lower()
        for comment in reversed(list(comments)):
            if comment.author.lower() != bot or not self.has_marker(comment.body):
                continue
            state = self.decode(comment.body)
            if state is not None:
                return state, comment.id
            logger.warning("Bot comment %s carries an unreadable state marker; checking older comments", comment.id)
        return None, None


def _last_marker(text: str) -> re.Match[str] | None:
    last: re.Match[str] | None = None
    for pattern in _MARKERS:
        for match in pattern.finditer(text):
            if last is None or match.start() > last.start():
                last = match
    return last
