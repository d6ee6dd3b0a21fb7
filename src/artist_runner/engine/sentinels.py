"""Sentinel rules that turn free-form output lines into control signals."""

from __future__ import annotations

from dataclasses import dataclass

from artist_runner.engine.models import Signal, Severity


@dataclass(slots=True, frozen=True)
class SentinelRule:
    """Case-insensitive substring mapped to a signal."""

    pattern: str
    signal: Signal


@dataclass(slots=True, frozen=True)
class SentinelMatch:
    """Matched rule, kept for diagnostics."""

    signal: Signal
    matched_pattern: str


DEFAULT_SERVICE_RULES: tuple[SentinelRule, ...] = (
    SentinelRule("wrapper down", Signal.SERVICE_DOWN),
    SentinelRule("down", Signal.SERVICE_DOWN),
    SentinelRule("ready", Signal.SERVICE_READY),
    SentinelRule("listening on", Signal.SERVICE_READY),
)
DEFAULT_WORKER_RULES: tuple[SentinelRule, ...] = (
    SentinelRule("all tasks completed.", Signal.TASK_SUCCESS),
    SentinelRule("critical error", Signal.TASK_FAILURE),
    SentinelRule("fatal", Signal.TASK_FAILURE),
)

_ERROR_PATTERNS: tuple[str, ...] = ("error", "fatal", "critical")
_WARNING_PATTERNS: tuple[str, ...] = ("warning", "warn")
_DEBUG_PATTERNS: tuple[str, ...] = ("debug",)
_INFO_PATTERNS: tuple[str, ...] = ("info",)

_SEVERITY_TABLE: tuple[tuple[tuple[str, ...], Severity], ...] = (
    (_ERROR_PATTERNS, Severity.ERROR),
    (_WARNING_PATTERNS, Severity.WARNING),
    (_DEBUG_PATTERNS, Severity.DEBUG),
    (_INFO_PATTERNS, Severity.INFO),
)


class SentinelMatcher:
    """Evaluates an ordered rule table once per line; first match wins."""

    def __init__(self, rules: tuple[SentinelRule, ...] | list[SentinelRule]) -> None:
        self.rules = tuple(
            SentinelRule(pattern=rule.pattern.lower(), signal=rule.signal)
            for rule in rules
            if rule.pattern.strip()
        )

    def match(self, line: str) -> SentinelMatch | None:
        haystack = line.lower()
        for rule in self.rules:
            if rule.pattern in haystack:
                return SentinelMatch(signal=rule.signal, matched_pattern=rule.pattern)
        return None

    def classify(self, line: str) -> Signal | None:
        """Return the signal carried by ``line``, if any."""

        matched = self.match(line)
        return matched.signal if matched is not None else None


def classify_severity(line: str) -> Severity:
    """Tag a line for observers. Never used for control flow."""

    haystack = line.lower()
    for patterns, severity in _SEVERITY_TABLE:
        if _first_match(haystack, patterns) is not None:
            return severity
    return Severity.OTHER


def parse_rules(raw: str) -> tuple[SentinelRule, ...]:
    """Parse ``"pattern|signal,pattern|signal"`` into a rule table."""

    rules: list[SentinelRule] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid sentinel rule {token!r}. Expected format '<pattern>|<signal>'.",
            )
        pattern, signal_raw = token.rsplit("|", 1)
        pattern = pattern.strip()
        signal_name = signal_raw.strip().lower()
        if not pattern:
            raise ValueError(f"Sentinel rule has an empty pattern: {token!r}")
        try:
            signal = Signal(signal_name)
        except ValueError as error:
            supported = ", ".join(item.value for item in Signal)
            raise ValueError(
                f"Unknown sentinel signal {signal_name!r} (supported: {supported}).",
            ) from error
        rules.append(SentinelRule(pattern=pattern, signal=signal))
    return tuple(rules)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
