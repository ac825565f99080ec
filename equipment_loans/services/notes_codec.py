"""Encoding and decoding of return reports stored in a loan's notes field.

The persisted format is line oriented::

    [2024-01-15 10:30:00]
    [Resource ID R1]
    Damages: [Cracked Screen, Broken Hinge] | Notes: "dropped"
    Suggestions: [Clean Keyboard] | Additional Notes: "sticky keys"

The leading timestamp line is optional. A ``[Resource ID ...]`` marker sets the
resource that the following damage/suggestion lines belong to. Anything else is
ignored, since the field is free text and may have been edited by hand.
Markers and blocks are recognised only at the start of a line, so note text
cannot redirect a report. Tags may not contain "]" or ", " and resource ids may
not contain "]"; the encoder rejects them with InvalidReportError.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from services.errors import InvalidReportError


LOGGER = logging.getLogger("equipment_loans.codec")

DEFAULT_RESOURCE_KEY = "default"
TAG_SEPARATOR = ", "

_TIMESTAMP_RE = re.compile(r"^\[([^\]]+)\]$")
_RESOURCE_MARKER_RE = re.compile(r"^\[Resource ID (.+)\]$")
_DAMAGE_BLOCK_RE = re.compile(r'^Damages: \[(.*?)\](?: \| Notes: "(.*)")?')
_SUGGESTION_BLOCK_RE = re.compile(r'^Suggestions: \[(.*?)\](?: \| Additional Notes: "(.*)")?')


class LineKind(Enum):
    TIMESTAMP = "timestamp"
    RESOURCE_MARKER = "resource_marker"
    DAMAGE_BLOCK = "damage_block"
    SUGGESTION_BLOCK = "suggestion_block"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class NoteToken:
    kind: LineKind
    value: str = ""
    tags: tuple[str, ...] = ()
    note: str = ""


@dataclass
class DamageReport:
    resource_id: str
    damages: list[str] = field(default_factory=list)
    damage_note: str = ""
    suggestions: list[str] = field(default_factory=list)
    suggestion_note: str = ""

    @property
    def is_damaged(self) -> bool:
        return bool(self.damages)

    def has_signal(self) -> bool:
        return bool(self.damages or self.suggestions or self.damage_note or self.suggestion_note)

    def copy_for(self, resource_id: str) -> "DamageReport":
        return DamageReport(
            resource_id=resource_id,
            damages=list(self.damages),
            damage_note=self.damage_note,
            suggestions=list(self.suggestions),
            suggestion_note=self.suggestion_note,
        )

    def merge(self, other: "DamageReport") -> None:
        """Append another report for the same resource, keeping encounter order."""
        self.damages.extend(other.damages)
        self.damage_note = _merge_note(self.damage_note, other.damage_note)
        self.suggestions.extend(other.suggestions)
        self.suggestion_note = _merge_note(self.suggestion_note, other.suggestion_note)


@dataclass
class ParsedNotes:
    timestamp: str | None = None
    reports: list[DamageReport] = field(default_factory=list)

    def by_resource(self) -> dict[str, DamageReport]:
        return {report.resource_id: report for report in self.reports}


def _split_tags(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(tag.strip() for tag in raw.split(TAG_SEPARATOR) if tag.strip())


def _single_line(value: str | None) -> str:
    # Notes must stay on one line or the block would be cut at the newline.
    return " ".join((value or "").split())


def _clean_tags(tags: Iterable[str] | None) -> list[str]:
    cleaned = []
    for tag in tags or []:
        value = _single_line(tag)
        if not value:
            continue
        if "]" in value or TAG_SEPARATOR in value:
            raise InvalidReportError(f"Tag {value!r} may not contain ']' or ', '.")
        cleaned.append(value)
    return cleaned


def _clean_resource_id(resource_id: str | None) -> str:
    value = (resource_id or "").strip()
    if "]" in value or "\n" in value:
        raise InvalidReportError(f"Resource id {value!r} may not contain ']' or line breaks.")
    return value


def scan_line(line: str) -> NoteToken:
    """Classify one notes line. Markers and blocks only count at the start of a line."""
    line = line.strip()

    marker = _RESOURCE_MARKER_RE.match(line)
    if marker:
        resource_id = marker.group(1).strip()
        if resource_id:
            return NoteToken(LineKind.RESOURCE_MARKER, value=resource_id)
        return NoteToken(LineKind.UNRECOGNIZED, value=line)

    damage = _DAMAGE_BLOCK_RE.match(line)
    if damage:
        return NoteToken(LineKind.DAMAGE_BLOCK, tags=_split_tags(damage.group(1)), note=damage.group(2) or "")

    suggestion = _SUGGESTION_BLOCK_RE.match(line)
    if suggestion:
        return NoteToken(LineKind.SUGGESTION_BLOCK, tags=_split_tags(suggestion.group(1)), note=suggestion.group(2) or "")

    return NoteToken(LineKind.UNRECOGNIZED, value=line)


def _merge_note(existing: str, addition: str) -> str:
    if not addition:
        return existing
    return f"{existing} {addition}" if existing else addition


def decode_notes(text: str | None) -> ParsedNotes:
    if not text or not text.strip():
        return ParsedNotes()

    lines = [line for line in text.split("\n") if line.strip()]
    timestamp = None
    if lines:
        first = lines[0].strip()
        match = _TIMESTAMP_RE.match(first)
        if match and not _RESOURCE_MARKER_RE.match(first):
            timestamp = match.group(1)
            lines = lines[1:]

    accumulated: dict[str, DamageReport] = {}
    current = DEFAULT_RESOURCE_KEY

    for line in lines:
        token = scan_line(line)
        if token.kind is LineKind.RESOURCE_MARKER:
            current = token.value
            continue
        if token.kind is LineKind.UNRECOGNIZED:
            LOGGER.debug("Skipping unrecognised notes line: %r", token.value)
            continue

        report = accumulated.get(current)
        if report is None:
            report = DamageReport(resource_id=current)
            accumulated[current] = report

        if token.kind is LineKind.DAMAGE_BLOCK:
            report.damages.extend(token.tags)
            report.damage_note = _merge_note(report.damage_note, token.note)
        elif token.kind is LineKind.SUGGESTION_BLOCK:
            report.suggestions.extend(token.tags)
            report.suggestion_note = _merge_note(report.suggestion_note, token.note)

    return ParsedNotes(
        timestamp=timestamp,
        reports=[report for report in accumulated.values() if report.has_signal()],
    )


def _report_block(report: DamageReport) -> list[str]:
    lines: list[str] = []
    damages = _clean_tags(report.damages)
    damage_note = _single_line(report.damage_note)
    if damages or damage_note:
        line = f"Damages: [{TAG_SEPARATOR.join(damages)}]"
        if damage_note:
            line += f' | Notes: "{damage_note}"'
        lines.append(line)

    suggestions = _clean_tags(report.suggestions)
    suggestion_note = _single_line(report.suggestion_note)
    if suggestions or suggestion_note:
        line = f"Suggestions: [{TAG_SEPARATOR.join(suggestions)}]"
        if suggestion_note:
            line += f' | Additional Notes: "{suggestion_note}"'
        lines.append(line)
    return lines


def encode_notes(reports: Iterable[DamageReport], timestamp: str | None = None) -> str:
    """Render reports as loan notes text. Returns "" when no report carries anything."""
    body: list[str] = []
    for report in reports:
        resource_id = _clean_resource_id(report.resource_id)
        if not resource_id:
            continue
        block = _report_block(report)
        if not block:
            continue
        body.append(f"[Resource ID {resource_id}]")
        body.extend(block)

    if not body:
        return ""
    if timestamp:
        return "\n".join([f"[{timestamp}]"] + body)
    return "\n".join(body)


def encode_resource_note(report: DamageReport, timestamp: str | None = None) -> str | None:
    """Resource-level variant of the notes text, without the resource marker."""
    block = _report_block(report)
    if not block:
        return None
    if timestamp:
        block = [f"[{timestamp}]"] + block
    return "\n".join(block)
