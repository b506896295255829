"""Classification of agent output: promise signals, rate limits and overloads.

Everything here works on free-form text and never raises.
"""

import re
from dataclasses import dataclass
from datetime import timedelta

_PROMISE_RE = re.compile(r"<promise>\s*(COMPLETE|CONTINUE|BLOCKED)\s*(?::\s*(.*?))?\s*</promise>", re.S)

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "overloaded",
    "capacity",
    "quota",
    "try again",
    "throttl",
)

OVERLOAD_EXHAUSTED_PATTERNS = (
    "529",
    "overloaded_error",
    "api is overloaded",
)

_OVERLOAD_EXHAUSTED_RES = (
    re.compile(r"exhausted.*retr"),
    re.compile(r"maximum.*retries"),
)

_WAIT_UNITS = (
    ("second", 1),
    ("minute", 60),
    ("hour", 3600),
)


@dataclass
class Signals:
    complete: bool = False
    continue_: bool = False
    blocked: bool = False
    blocked_reason: str = ""
    commit_message: str = ""


def parse_signals(output: str) -> Signals:
    """Extract promise signals from agent output.

    COMPLETE and CONTINUE take an optional ': message' used as the commit
    message. Only the first occurrence of each tag counts, and a CONTINUE
    message wins over a COMPLETE one. BLOCKED only counts with a reason.
    """
    signals = Signals()
    complete_message = continue_message = ""
    for kind, message in _PROMISE_RE.findall(output or ""):
        message = (message or "").strip()
        if kind == "COMPLETE" and not signals.complete:
            signals.complete = True
            complete_message = message
        elif kind == "CONTINUE" and not signals.continue_:
            signals.continue_ = True
            continue_message = message
        elif kind == "BLOCKED" and message and not signals.blocked:
            signals.blocked = True
            signals.blocked_reason = message
    signals.commit_message = continue_message or complete_message
    return signals


def detect_rate_limit(output: str, error: str = "") -> bool:
    text = f"{output}\n{error}".lower()
    return any(p in text for p in RATE_LIMIT_PATTERNS)


def parse_retry_after(text: str) -> timedelta:
    """Find a wait like '30 seconds' or '2 minutes'. Zero if none is found.

    For each unit in turn, look at up to five characters before each
    occurrence and take the trailing digits.
    """
    lower = (text or "").lower()
    for unit, scale in _WAIT_UNITS:
        start = 0
        while True:
            idx = lower.find(unit, start)
            if idx < 0:
                break
            window = lower[max(0, idx - 5):idx].rstrip()
            match = re.search(r"(\d+)$", window)
            if match and int(match.group(1)) > 0:
                return timedelta(seconds=int(match.group(1)) * scale)
            start = idx + len(unit)
    return timedelta(0)


def detect_overload_exhausted(output: str, error: str = "", exit_code: int = 0) -> bool:
    """True when the agent gave up after exhausting its own overload retries."""
    if not error and exit_code == 0:
        return False
    text = f"{output}\n{error}".lower()
    if any(p in text for p in OVERLOAD_EXHAUSTED_PATTERNS):
        return True
    if any(r.search(text) for r in _OVERLOAD_EXHAUSTED_RES):
        return True
    return exit_code != 0 and "overloaded" in text
