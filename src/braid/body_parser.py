"""Extract dependency, blocks and parent references from free-text issue bodies.

Remote trackers without native dependency fields carry them as body lines::

    Depends on: #12, #34
    Blocks:
    - #56
    - https://github.com/acme/app/issues/78
    Parent: #9

Each match of a configured pattern starts a block that may continue over
following lines. The continuation scan is a small state machine so the
termination rules are explicit:

- ``SCANNING_MATCH``: look for the next non-overlapping pattern match.
- ``IN_CONTINUATION``: walk forward line by line from the end of the match.
  Bullets (``- #123``), lines with an issue reference and lines naming an
  issue host extend the block.
- ``TERMINATED``: reached on a blank line after the match line, a Markdown
  heading, a new ``Label:`` line, or any other text. The block is emitted
  and scanning resumes.

Fragments are resolved to bare issue numbers by trying an issue URL
(``.../issues/<n>``) and then ``#<n>``. Fragments matching neither are
dropped; free text is expected to contain noise.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from braid.conventions import ConventionConfig

logger = logging.getLogger(__name__)

ISSUE_HOSTS = ("github.com",)

_URL_REF_RE = re.compile(r"https?://[^\s/]+/[^\s/]+/[^\s/]+/issues/(\d+)")
_HASH_REF_RE = re.compile(r"#(\d+)")
_BULLET_RE = re.compile(r"^\s*[-*]\s*#?\d+")
_HEADING_RE = re.compile(r"^#{1,6}\s")
_SECTION_RE = re.compile(r"^[A-Z][a-z]+( [a-z]+)?:")
_HOST_RE = re.compile("|".join(re.escape(h) for h in ISSUE_HOSTS))

# Used when the configured parent pattern does not match at all.
_PARENT_FALLBACK_RE = re.compile(r"Parent:\s*(.+?)(?:\n|$)", re.IGNORECASE)

METADATA_MARKER = "<!-- braid-sync metadata - do not edit below -->"


class ScanState(enum.Enum):
    SCANNING_MATCH = "scanning-match"
    IN_CONTINUATION = "in-continuation"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ReferenceBlock:
    """One captured block: the text to split and the body span it covers."""

    text: str
    start: int
    end: int


@dataclass(frozen=True)
class ParsedBody:
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    parent: str | None = None


def extract_issue_number(fragment: str) -> str | None:
    """Resolve one fragment to an issue number: URL form first, then ``#<n>``."""
    match = _URL_REF_RE.search(fragment)
    if match:
        return match.group(1)
    match = _HASH_REF_RE.search(fragment)
    if match:
        return match.group(1)
    return None


def _is_continuation(line: str) -> bool:
    return bool(_BULLET_RE.match(line) or _HASH_REF_RE.search(line) or _HOST_RE.search(line))


def _terminates(line: str) -> bool:
    return bool(_HEADING_RE.match(line) or _SECTION_RE.match(line))


def scan_blocks(body: str, pattern: re.Pattern[str]) -> list[ReferenceBlock]:
    """Return every block started by *pattern*, continuation lines included."""
    blocks: list[ReferenceBlock] = []
    state = ScanState.SCANNING_MATCH
    matches = pattern.finditer(body)
    text = ""
    start = end = 0

    while True:
        if state is ScanState.SCANNING_MATCH:
            match = next(matches, None)
            if match is None:
                break
            text = match.group(1) if match.re.groups and match.group(1) else ""
            start, end = match.start(), match.end()
            state = ScanState.IN_CONTINUATION

        elif state is ScanState.IN_CONTINUATION:
            # The first piece is the tail of the matched line; it may be blank.
            pos = end
            first = True
            while True:
                newline = body.find("\n", pos)
                line = body[pos:] if newline == -1 else body[pos:newline]
                if not line.strip():
                    if not first or newline == -1:
                        break
                elif _terminates(line) or not _is_continuation(line):
                    break
                else:
                    text += "\n" + line
                    end = pos + len(line)
                if newline == -1:
                    break
                pos = newline + 1
                first = False
            state = ScanState.TERMINATED

        else:
            blocks.append(ReferenceBlock(text=text, start=start, end=end))
            state = ScanState.SCANNING_MATCH

    return blocks


def split_references(text: str, separator: str) -> list[str]:
    """Split on *separator* or newlines and keep fragments that resolve to an issue number."""
    numbers: list[str] = []
    for part in re.split(f"{re.escape(separator)}|\n", text):
        fragment = part.strip()
        if not fragment:
            continue
        number = extract_issue_number(fragment)
        if number is not None:
            numbers.append(number)
    return numbers


def _collect(body: str, pattern: re.Pattern[str] | None, separator: str) -> list[str]:
    if pattern is None:
        return []
    found: list[str] = []
    for block in scan_blocks(body, pattern):
        found.extend(split_references(block.text, separator))
    return list(dict.fromkeys(found))


def parse_parent(body: str, config: ConventionConfig) -> str | None:
    """Resolve the parent reference.

    The configured pattern is tried first (its capture group if it has one,
    otherwise URL/``#`` extraction over the whole match). When it does not
    match at all a hard-coded ``Parent:`` scan is tried as well. The second
    tier is kept for compatibility with existing issue bodies.
    """
    if config.parent_re is None:
        return None
    match = config.parent_re.search(body)
    if match:
        if match.re.groups and match.group(1):
            captured = match.group(1).strip()
            return extract_issue_number(captured) or captured
        return extract_issue_number(match.group(0))
    fallback = _PARENT_FALLBACK_RE.search(body)
    if fallback:
        number = extract_issue_number(fallback.group(1).strip())
        if number is not None:
            logger.debug("Parent resolved by fallback pattern: #%s", number)
        return number
    return None


def parse_issue_body(body: str | None, config: ConventionConfig) -> ParsedBody:
    """Extract ``depends_on``, ``blocks`` and ``parent`` references from *body*.

    Pure function; results are deduplicated in order of first occurrence.
    """
    if not body:
        return ParsedBody()
    return ParsedBody(
        depends_on=_collect(body, config.depends_on_re, config.separator),
        blocks=_collect(body, config.blocks_re, config.separator),
        parent=parse_parent(body, config),
    )


def strip_convention_sections(body: str | None, config: ConventionConfig) -> str:
    """Remove reference blocks and the generated metadata section, leaving the description."""
    if not body:
        return ""
    marker = body.find(METADATA_MARKER)
    if marker != -1:
        head = body[:marker].rstrip()
        if head.endswith("---"):
            head = head[: -len("---")]
        body = head

    spans: list[tuple[int, int]] = []
    for pattern in (config.depends_on_re, config.blocks_re):
        if pattern is not None:
            spans.extend((b.start, b.end) for b in scan_blocks(body, pattern))
    if config.parent_re is not None:
        for match in config.parent_re.finditer(body):
            line_end = body.find("\n", match.end())
            spans.append((match.start(), len(body) if line_end == -1 else line_end))

    pieces: list[str] = []
    pos = 0
    for start, end in sorted(spans):
        if start < pos:
            start = pos
        pieces.append(body[pos:start])
        pos = max(pos, end)
    pieces.append(body[pos:])
    description = "".join(pieces)
    return re.sub(r"\n{3,}", "\n\n", description).strip()


def render_metadata_section(
    depends_on: list[str],
    blocks: list[str],
    parent: str | None,
    separator: str,
) -> str | None:
    """Render the generated block appended to remote bodies. *refs* are already formatted."""
    if not depends_on and not blocks and not parent:
        return None
    lines = ["---", METADATA_MARKER]
    if depends_on:
        lines.append(f"Depends on: {separator.join(depends_on)}")
    if blocks:
        lines.append(f"Blocks: {separator.join(blocks)}")
    if parent:
        lines.append(f"Parent: {parent}")
    return "\n".join(lines)
