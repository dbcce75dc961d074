from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import hashlib
import re
import unicodedata
from typing import Callable

from renewsync.core.errors import CredentialsNotFoundError
from renewsync.services.telemetry import increment_counter


class ExtractionMethod(str, Enum):
    STRUCTURED = "structured"
    LINE_HEURISTIC = "line_heuristic"
    REGEX = "regex"


@dataclass(frozen=True)
class RawCapture:
    text: str
    source: str = "panel"
    captured_at: datetime | None = None


@dataclass(frozen=True)
class ExtractionResult:
    username: str
    password: str
    expires_at: str | None
    method: ExtractionMethod
    raw_text_digest: str

    def as_dict(self) -> dict[str, str | None]:
        return {
            "username": self.username,
            "password": self.password,
            "expires_at": self.expires_at,
            "method": self.method.value,
            "raw_text_digest": self.raw_text_digest,
        }


@dataclass
class _Fields:
    username: str | None = None
    password: str | None = None
    expires_at: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.username) and bool(self.password)


_USER = "user"
_PASSWORD = "password"
_EXPIRY = "expiry"

_LABEL_TOKENS = {
    _USER: r"usu[áa]rio|username|user|login",
    _PASSWORD: r"senha|password|pass",
    _EXPIRY: r"vencimento|validade|expira(?:ção|cao)?|expiration|expires?",
}
_ANY_LABEL = "|".join(_LABEL_TOKENS.values())

# A label at the start of a line, optionally decorated (bullets, emoji) and followed by a separator.
_LINE_LABEL_RE = {
    kind: re.compile(
        rf"^[^\w]*(?:{tokens})(?!\w)\s*(?P<sep>[:=\-])?\s*(?P<rest>.*)$",
        re.IGNORECASE,
    )
    for kind, tokens in _LABEL_TOKENS.items()
}
_LABEL_LIKE_RE = re.compile(rf"^[^\w]*(?:{_ANY_LABEL})(?!\w)\s*[:=\-]?\s*$", re.IGNORECASE)
_DATE_RE = re.compile(r"(?<!\d)\d{2}/\d{2}/\d{4}(?:\s+\d{2}:\d{2}(?::\d{2})?)?")
_BLOCK_SPLIT_RE = re.compile(r"\n\s*\n")

# (pattern, shaped): a shaped pattern has no separator after the label, so its
# value must look like a credential rather than the next word of a sentence.
_REGEX_FAMILIES: dict[str, tuple[tuple[re.Pattern[str], bool], ...]] = {
    _USER: (
        (re.compile(rf"(?<!\w)(?:{_LABEL_TOKENS[_USER]})(?!\w)\s*[:=\-]\s*(?P<value>\S+)", re.IGNORECASE), False),
        (re.compile(rf"(?<!\w)(?:{_LABEL_TOKENS[_USER]})(?!\w)\s*(?P<value>\S+)", re.IGNORECASE), True),
        (re.compile(r"(?<![\w/])(?P<value>\d{8,12})(?![\w/])"), False),
    ),
    _PASSWORD: (
        (re.compile(rf"(?<!\w)(?:{_LABEL_TOKENS[_PASSWORD]})(?!\w)\s*[:=\-]\s*(?P<value>\S+)", re.IGNORECASE), False),
        (re.compile(rf"(?<!\w)(?:{_LABEL_TOKENS[_PASSWORD]})(?!\w)\s*(?P<value>\S+)", re.IGNORECASE), True),
    ),
    _EXPIRY: (
        (
            re.compile(
                rf"(?<!\w)(?:{_LABEL_TOKENS[_EXPIRY]})(?!\w)\s*[:=\-]?\s*(?P<value>{_DATE_RE.pattern})",
                re.IGNORECASE,
            ),
            False,
        ),
    ),
}


def _credential_shaped(value: str) -> bool:
    # Plain lowercase words ("gerado", "ativa") are prose, not generated credentials.
    return any(char.isdigit() for char in value) or not (value.isalpha() and value.islower())


def _looks_like_label(value: str) -> bool:
    stripped = value.strip()
    return not stripped or stripped.endswith(":") or bool(_LABEL_LIKE_RE.match(stripped))


def _first_token(value: str) -> str | None:
    parts = value.strip().split()
    if not parts:
        return None
    token = parts[0]
    return None if _looks_like_label(token) else token


def _expiry_value(value: str) -> str | None:
    match = _DATE_RE.search(value)
    if match:
        return " ".join(match.group(0).split())
    stripped = value.strip()
    return stripped if stripped and not _looks_like_label(stripped) else None


def _classify_line(line: str) -> tuple[str, str] | None:
    # Return (label kind, inline rest) for label lines; None for value lines.
    for kind, pattern in _LINE_LABEL_RE.items():
        match = pattern.match(line)
        if not match:
            continue
        rest = match.group("rest").strip()
        if match.group("sep") or not rest:
            return kind, rest
        if kind == _EXPIRY and _DATE_RE.search(rest):
            return kind, rest
        if len(rest.split()) == 1:
            return kind, rest
        # Prose such as "Login realizado com sucesso" is not a label line.
        return None
    return None


def _value_from(kind: str, inline: str) -> str | None:
    if kind == _EXPIRY:
        return _expiry_value(inline)
    return _first_token(inline)


def _fields_from_lines(lines: list[str]) -> _Fields:
    # Same-line value first; otherwise the next line when it is not another label.
    fields = _Fields()
    for index, line in enumerate(lines):
        classified = _classify_line(line)
        if classified is None:
            continue
        kind, inline = classified
        attr = {_USER: "username", _PASSWORD: "password", _EXPIRY: "expires_at"}[kind]
        if getattr(fields, attr):
            continue
        value = _value_from(kind, inline) if inline else None
        if value is None and not inline and index + 1 < len(lines):
            candidate = lines[index + 1]
            if _classify_line(candidate) is None and not _looks_like_label(candidate):
                value = _value_from(kind, candidate)
        if value:
            setattr(fields, attr, value)
    return fields


def _structured(text: str) -> _Fields | None:
    for block in _BLOCK_SPLIT_RE.split(text):
        lines = [line.strip() for line in block.splitlines() if line.strip()]
        kinds = {classified[0] for classified in map(_classify_line, lines) if classified}
        if _USER in kinds and _PASSWORD in kinds:
            fields = _fields_from_lines(lines)
            return fields if fields.complete else None
    return None


def _line_heuristic(text: str) -> _Fields | None:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    fields = _fields_from_lines(lines)
    return fields if fields.complete else None


def _search_family(kind: str, text: str, *, exclude: str | None = None) -> str | None:
    for pattern, shaped in _REGEX_FAMILIES[kind]:
        for match in pattern.finditer(text):
            value = match.group("value").strip()
            if kind == _EXPIRY:
                return " ".join(value.split())
            if _looks_like_label(value) or value == exclude:
                continue
            if shaped and not _credential_shaped(value):
                continue
            return value
    return None


def _regex(text: str) -> _Fields | None:
    password = _search_family(_PASSWORD, text)
    username = _search_family(_USER, text, exclude=password)
    fields = _Fields(
        username=username,
        password=password,
        expires_at=_search_family(_EXPIRY, text),
    )
    return fields if fields.complete else None


_STRATEGIES: tuple[tuple[ExtractionMethod, Callable[[str], _Fields | None]], ...] = (
    (ExtractionMethod.STRUCTURED, _structured),
    (ExtractionMethod.LINE_HEURISTIC, _line_heuristic),
    (ExtractionMethod.REGEX, _regex),
)


def digest_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extract_credentials(capture: RawCapture) -> ExtractionResult:
    """Parse a username/password pair (and expiry when present) from captured panel text.

    Strategies run in order and the first that yields both credentials wins.
    Raises CredentialsNotFoundError naming every strategy tried.
    """
    raw = capture.text or ""
    text = unicodedata.normalize("NFC", raw).replace("\r\n", "\n").replace("\r", "\n")
    attempted: list[str] = []
    for method, strategy in _STRATEGIES:
        attempted.append(method.value)
        fields = strategy(text)
        if fields is None:
            continue
        increment_counter(f"extraction_tier_hits.{method.value}")
        expires_at = fields.expires_at
        if not expires_at:
            match = _DATE_RE.search(text)
            expires_at = " ".join(match.group(0).split()) if match else None
        return ExtractionResult(
            username=fields.username or "",
            password=fields.password or "",
            expires_at=expires_at,
            method=method,
            raw_text_digest=digest_text(raw),
        )
    increment_counter("extraction_failures_total")
    raise CredentialsNotFoundError(tuple(attempted))
