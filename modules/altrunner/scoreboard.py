"""Sidebar scoreboard interpretation.

The server exposes no API for the shard an alt is standing in, so the world
name is read off the sidebar scoreboard. Everything here is pure: the client
adapter hands over a :class:`Scoreboard` snapshot and gets back an optional
world name.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

__all__ = [
    "DEFAULT_DENY_KEYWORDS",
    "DEFAULT_DENY_LIST",
    "Scoreboard",
    "ScoreboardLine",
    "WorldDenyList",
    "guess_world",
    "interpret",
    "lines_from_scoreboard",
    "match_known_world",
    "normalize_for_match",
]

SIDEBAR = "sidebar"
_POSITION_NAMES = {0: "list", 1: "sidebar", 2: "belowName"}

_LEGACY_CODE_RE = re.compile(r"§[0-9A-FK-OR]", re.IGNORECASE)
_SEASON_RE = re.compile(r"\bseason\b")

# Small-caps letterforms used by stylised scoreboards.
_SMALLCAPS = str.maketrans(
    {
        "ᴀ": "a",
        "ʙ": "b",
        "ᴄ": "c",
        "ᴅ": "d",
        "ᴇ": "e",
        "ғ": "f",
        "ɢ": "g",
        "ʜ": "h",
        "ɪ": "i",
        "ᴊ": "j",
        "ᴋ": "k",
        "ʟ": "l",
        "ᴍ": "m",
        "ɴ": "n",
        "ᴏ": "o",
        "ᴘ": "p",
        "ʀ": "r",
        "ꜱ": "s",
        "ᴛ": "t",
        "ᴜ": "u",
        "ᴠ": "v",
        "ᴡ": "w",
        "ʏ": "y",
        "ᴢ": "z",
    }
)

DEFAULT_DENY_KEYWORDS: tuple[str, ...] = (
    "season",
    "server",
    "balance",
    "experience",
    r"xp\b",
    "k/d",
    r"fly\s*time",
    "power",
    r"online\b",
    "shield",
    "faction",
    "member",
    "claim",
    "claimed",
    "money",
    "coins",
    "vote",
    "store",
    "discord",
    "website",
    r"hub\b",
    r"mc-?complex",
    r"\.com",
)

_BRACKET_PREFIX_RE = re.compile(r"^\s*[\[\(]")
_BULLET_PREFIX_RE = re.compile(r"^\s*[•▪\-]")
_BRACKETED_RE = re.compile(r"\[[^\]]+\]")


def _starts_with_symbol(raw: str) -> bool:
    """Decorative glyph prefixes (dingbats, arrows, emoji) mark label lines."""

    text = raw.lstrip()
    return bool(text) and unicodedata.category(text[0]).startswith("S")


@dataclass(frozen=True)
class ScoreboardLine:
    text: str
    score: int = 0


@dataclass(frozen=True)
class Scoreboard:
    """Plain snapshot of one scoreboard objective."""

    name: str
    title: str = ""
    position: object = SIDEBAR
    lines: tuple[ScoreboardLine, ...] = field(default_factory=tuple)

    @property
    def position_name(self) -> str:
        return position_name(self.position)

    @property
    def is_sidebar(self) -> bool:
        return self.position_name == SIDEBAR


def position_name(position: object) -> str:
    if isinstance(position, str):
        return position
    if isinstance(position, int):
        return _POSITION_NAMES.get(position, str(position))
    return str(position)


def normalize_for_match(text: str | None) -> str:
    """Fold diacritics and small-caps letterforms, then lowercase."""

    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.translate(_SMALLCAPS).lower()


def lines_from_scoreboard(scoreboard: Scoreboard | None) -> list[str]:
    """Return display lines ordered as the client renders them.

    Highest score first, ties alphabetical; legacy ``§`` codes removed,
    blank and ``-`` placeholder lines dropped.
    """

    if scoreboard is None:
        return []
    items = sorted(scoreboard.lines, key=lambda item: (-int(item.score or 0), item.text or ""))
    lines: list[str] = []
    for item in items:
        raw = (item.text or "").strip()
        if not raw:
            continue
        cleaned = _LEGACY_CODE_RE.sub("", raw).strip()
        if cleaned and cleaned != "-":
            lines.append(cleaned)
    return lines


class WorldDenyList:
    """Rules deciding which scoreboard lines cannot be a world name.

    Keywords are regular expressions matched against the normalised line;
    the structural rules (bracket prefix, bullets, bracketed tags, colons)
    look at the original text.
    """

    def __init__(self, keywords: Iterable[str] = DEFAULT_DENY_KEYWORDS) -> None:
        self.keywords = tuple(k for k in keywords if k)
        pattern = "|".join(f"(?:{k})" for k in self.keywords) or r"(?!x)x"
        self._keyword_re = re.compile(pattern, re.IGNORECASE)

    @classmethod
    def with_extra(cls, extra: Iterable[str]) -> "WorldDenyList":
        return cls((*DEFAULT_DENY_KEYWORDS, *(re.escape(k.lower()) for k in extra if k)))

    def allows(self, raw: str, norm: str | None = None) -> bool:
        if not raw or not raw.strip():
            return False
        if norm is None:
            norm = normalize_for_match(raw)
        if self._keyword_re.search(norm):
            return False
        if _BRACKET_PREFIX_RE.search(raw):
            return False
        if _BULLET_PREFIX_RE.search(raw) or _starts_with_symbol(raw):
            return False
        if _BRACKETED_RE.search(raw):
            return False
        if ":" in raw:
            return False
        return True


DEFAULT_DENY_LIST = WorldDenyList()

WINDOW_SIZE = 6


def guess_world(
    lines: Sequence[str] | None,
    deny: WorldDenyList = DEFAULT_DENY_LIST,
) -> Optional[str]:
    """Pick the world name out of ordered sidebar lines.

    Scanning starts just below a "season" line when one exists. The first
    allowed line in a six-line window wins; otherwise the first allowed line
    anywhere. The original (un-normalised) text is returned.
    """

    if not lines:
        return None
    pairs = [(raw, normalize_for_match(raw)) for raw in lines]

    season_idx = next((i for i, (_, norm) in enumerate(pairs) if _SEASON_RE.search(norm)), -1)
    start = min(season_idx + 1, len(pairs) - 1) if season_idx >= 0 else 0

    for raw, norm in pairs[start : start + WINDOW_SIZE]:
        if deny.allows(raw, norm):
            return raw
    for raw, norm in pairs:
        if deny.allows(raw, norm):
            return raw
    return None


def interpret(
    scoreboard: Scoreboard | None,
    deny: WorldDenyList = DEFAULT_DENY_LIST,
) -> tuple[list[str], Optional[str]]:
    lines = lines_from_scoreboard(scoreboard)
    return lines, guess_world(lines, deny)


def match_known_world(world: str | None, hints: Iterable[str]) -> Optional[str]:
    """Return the hint spelling of ``world`` when it is a known world."""

    target = normalize_for_match(world).strip()
    if not target:
        return None
    for hint in hints:
        if normalize_for_match(hint).strip() == target:
            return hint
    return None
