"""Auto-answers for interactive prompts printed by the agent process.

The agent runs unattended, so anything that looks like a confirmation
prompt is answered affirmatively. Detection is table-driven: the first
matching entry of ``AUTO_RESPONSES`` wins; when nothing specific matches
but the text still looks like a question, ``DEFAULT_RESPONSE`` is sent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

WINDOW_SIZE = 500
DEFAULT_RESPONSE = "y\n"


@dataclass(frozen=True)
class AutoResponse:
    pattern: re.Pattern[str]
    response: str


def _rule(pattern: str, response: str, flags: int = re.IGNORECASE) -> AutoResponse:
    return AutoResponse(re.compile(pattern, flags), response)


# Order matters: "[Y/n]" must win over the generic "?" question match.
AUTO_RESPONSES: tuple[AutoResponse, ...] = (
    _rule(r"\(y/n\)", "y\n"),
    _rule(r"\(yes/no\)", "yes\n"),
    _rule(r"\[Y/n\]", "Y\n", 0),
    _rule(r"\[y/N\]", "y\n", 0),
    _rule(r"continue\?", "y\n"),
    _rule(r"proceed\?", "y\n"),
    _rule(r"confirm", "y\n"),
    _rule(r"press enter", "\n"),
)

QUESTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\?\s*$"),
    re.compile(r"\(y/n\)", re.IGNORECASE),
    re.compile(r"\(yes/no\)", re.IGNORECASE),
    re.compile(r"continue\?", re.IGNORECASE),
    re.compile(r"proceed\?", re.IGNORECASE),
    re.compile(r"confirm", re.IGNORECASE),
    re.compile(r"press enter", re.IGNORECASE),
    re.compile(r"\[Y/n\]"),
    re.compile(r"\[y/N\]"),
)


def is_question(text: str) -> bool:
    return any(pattern.search(text) for pattern in QUESTION_PATTERNS)


def auto_response_for(
    text: str,
    rules: tuple[AutoResponse, ...] = AUTO_RESPONSES,
    default: str | None = DEFAULT_RESPONSE,
) -> str | None:
    """Return the reply for *text*, or ``None`` when it is not a prompt."""
    for rule in rules:
        if rule.pattern.search(text):
            return rule.response
    if default is not None and is_question(text):
        return default
    return None


class PromptResponder:
    """Bounded window over recent output plus the response table.

    ``feed`` appends a chunk and reports the reply to send, if any. After a
    reply is written the caller calls ``clear`` so the echoed answer (and
    the prompt that caused it) cannot trigger a second reply.
    """

    def __init__(
        self,
        rules: tuple[AutoResponse, ...] = AUTO_RESPONSES,
        default: str | None = DEFAULT_RESPONSE,
        window_size: int = WINDOW_SIZE,
    ) -> None:
        self.rules = rules
        self.default = default
        self.window_size = window_size
        self._window = ""

    @property
    def window(self) -> str:
        return self._window

    def feed(self, chunk: str) -> str | None:
        self._window = (self._window + chunk)[-self.window_size :]
        return auto_response_for(self._window, self.rules, self.default)

    def clear(self) -> None:
        self._window = ""
