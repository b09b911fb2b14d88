"""
Pattern matching for hearing handlers and question options.

The default matcher tests each pattern as a case-insensitive regex against
the message text and records the match on the message. Swap it by passing
another callable with the same signature to `Controller.change_ears`.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Union

Pattern = Union[str, re.Pattern]
Matcher = Callable[[list[Pattern], Any], bool]


UTTERANCES: dict[str, re.Pattern] = {
    "yes": re.compile(r"^(yes|yea|yup|yep|ya|sure|ok|y|yeah|yah)", re.IGNORECASE),
    "no": re.compile(r"^(no|nah|nope|n)", re.IGNORECASE),
    "quit": re.compile(r"^(quit|cancel|end|stop|done|exit|nevermind|never mind)", re.IGNORECASE),
}


def compile_pattern(pattern: Pattern) -> re.Pattern:
    if isinstance(pattern, re.Pattern):
        return pattern
    return re.compile(pattern, re.IGNORECASE)


def hears_regexp(patterns: Union[Pattern, list[Pattern]], message: Any) -> bool:
    """Return True on the first pattern that matches; sets `message.match`."""
    if not isinstance(patterns, list):
        patterns = [patterns]
    text = getattr(message, "text", None)
    if not text:
        return False
    for pattern in patterns:
        match = compile_pattern(pattern).search(text)
        if match:
            message.match = match
            return True
    return False
