"""Unified diff creation, parsing and application."""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field

from core.errors import PatchApplyError

NO_NEWLINE = "\\ No newline at end of file"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # (tag, line) pairs; tag is " ", "-" or "+", line keeps its "\n"
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def old_lines(self):
        return [text for tag, text in self.lines if tag in (" ", "-")]

    @property
    def new_lines(self):
        return [text for tag, text in self.lines if tag in (" ", "+")]


@dataclass
class DiffLine:
    kind: str                   # add|remove|context|header
    text: str
    old_line: int | None = None
    new_line: int | None = None


def split_lines(text):
    """Split on "\\n" only, keeping line endings."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def create_diff(path, old, new, context_lines=3) -> str:
    """Unified diff from `old` to `new` with a/ and b/ prefixes.

    Returns "" when the texts are identical.
    """
    out = []
    for line in difflib.unified_diff(
        split_lines(old), split_lines(new),
        fromfile=f"a/{path}", tofile=f"b/{path}", n=context_lines,
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE + "\n")
    return "".join(out)


def _classify(diff_text):
    """Yield (kind, line, header_match) for each line of a diff.

    kind is "hunk", "file", "marker", "content" or "other". Lines inside a
    hunk's declared counts are always content, so a removed line that reads
    "-- x" is not mistaken for a file header.
    """
    raw = diff_text.split("\n")
    while raw and raw[-1] == "":
        raw.pop()
    old_left = new_left = 0
    in_hunk = False
    for line in raw:
        m = _HUNK_HEADER.match(line)
        if m:
            in_hunk = True
            old_left = int(m.group(2)) if m.group(2) is not None else 1
            new_left = int(m.group(4)) if m.group(4) is not None else 1
            yield "hunk", line, m
            continue
        if line.startswith("\\"):
            yield "marker", line, None
            continue
        counted = old_left > 0 or new_left > 0
        if not counted and (line.startswith("--- ") or line.startswith("+++ ") or line.startswith("diff ")):
            in_hunk = False
            yield "file", line, None
            continue
        if not in_hunk:
            yield "other", line, None
            continue
        tag = line[:1]
        if tag == "" and not counted:
            yield "other", line, None
            continue
        if tag in (" ", ""):
            old_left -= 1
            new_left -= 1
        elif tag == "-":
            old_left -= 1
        elif tag == "+":
            new_left -= 1
        else:
            yield "other", line, None
            continue
        yield "content", line, None


def parse_hunks(diff_text) -> list[Hunk]:
    hunks = []
    for kind, line, m in _classify(diff_text):
        if kind == "hunk":
            hunks.append(Hunk(
                old_start=int(m.group(1)),
                old_count=int(m.group(2)) if m.group(2) is not None else 1,
                new_start=int(m.group(3)),
                new_count=int(m.group(4)) if m.group(4) is not None else 1,
            ))
        elif kind == "marker" and hunks and hunks[-1].lines:
            tag, text = hunks[-1].lines[-1]
            hunks[-1].lines[-1] = (tag, text.rstrip("\n"))
        elif kind == "content":
            # a bare empty line is a context line whose leading space was lost
            tag = line[:1] or " "
            hunks[-1].lines.append((tag, line[1:] + "\n"))
    return hunks


def _same(a, b):
    return a.rstrip("\n") == b.rstrip("\n")


def _locate(lines, block, expected, floor):
    """Nearest index >= floor where `block` matches, searching outwards."""
    limit = len(lines) - len(block)
    if limit < floor:
        return None
    expected = min(max(expected, floor), limit)
    for offset in range(0, len(lines) + 1):
        for pos in (expected - offset, expected + offset) if offset else (expected,):
            if floor <= pos <= limit and all(
                _same(lines[pos + k], block[k]) for k in range(len(block))
            ):
                return pos
    return None


def apply_patch(old, diff_text) -> str:
    """Apply `diff_text` to `old` and return the new text.

    Raises PatchApplyError when a hunk's context or removed lines do not
    match. The input string is never modified.
    """
    if not diff_text.strip():
        return old
    hunks = parse_hunks(diff_text)
    if not hunks:
        raise PatchApplyError("Diff contains no hunks")

    if not old:
        # nothing to anchor against
        return "".join(line for h in hunks for line in h.new_lines)

    lines = split_lines(old)
    result = []
    cursor = 0
    for index, hunk in enumerate(hunks):
        block = hunk.old_lines
        expected = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        pos = _locate(lines, block, expected, cursor)
        if pos is None:
            raise PatchApplyError(
                f"Hunk {index + 1} (@@ -{hunk.old_start},{hunk.old_count}) does not match",
                hunk_index=index,
            )
        result.extend(lines[cursor:pos])
        result.extend(hunk.new_lines)
        cursor = pos + len(block)
    result.extend(lines[cursor:])
    return "".join(result)


def validate_patch(old, diff_text) -> bool:
    try:
        apply_patch(old, diff_text)
    except PatchApplyError:
        return False
    return True


def parse_diff_lines(diff_text) -> list[DiffLine]:
    """Display lines with independent old/new line numbers."""
    out = []
    old_no = new_no = 0
    for kind, line, m in _classify(diff_text):
        if kind == "hunk":
            old_no = int(m.group(1))
            new_no = int(m.group(3))
            out.append(DiffLine("header", line))
        elif kind != "content":
            out.append(DiffLine("header", line))
        elif line.startswith("+"):
            out.append(DiffLine("add", line[1:], new_line=new_no))
            new_no += 1
        elif line.startswith("-"):
            out.append(DiffLine("remove", line[1:], old_line=old_no))
            old_no += 1
        else:
            out.append(DiffLine("context", line[1:], old_line=old_no, new_line=new_no))
            old_no += 1
            new_no += 1
    return out


def diff_stats(diff_text):
    additions = deletions = 0
    for kind, line, _ in _classify(diff_text):
        if kind != "content":
            continue
        if line.startswith("+"):
            additions += 1
        elif line.startswith("-"):
            deletions += 1
    return {"additions": additions, "deletions": deletions}


def clean_diff_output(model_text, path) -> str:
    """Strip fences and chatter from a model's diff and ensure file headers."""
    text = model_text.strip()
    fenced = re.search(r"```(?:diff|patch)?[ \t]*\n(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)

    lines = text.split("\n")
    start = next(
        (i for i, l in enumerate(lines) if l.startswith("--- ") or l.startswith("@@")),
        None,
    )
    if start is None:
        return ""
    lines = lines[start:]
    if not lines[0].startswith("--- "):
        lines = [f"--- a/{path}", f"+++ b/{path}"] + lines
    cleaned = "\n".join(lines).rstrip("\n")
    return cleaned + "\n"
