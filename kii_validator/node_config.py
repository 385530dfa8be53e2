"""Line-indexed editing of the node's TOML configuration files.

Only the keys being updated are rewritten; every other line, including
comments, blank lines and ordering, round-trips byte for byte.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigRewriteError

_SECTION_RE = re.compile(r"^\s*\[\[?\s*(?P<name>[^\[\]]+?)\s*\]\]?\s*(?:#.*)?$")
_KEY_RE = re.compile(r"^(?P<indent>\s*)(?P<key>[A-Za-z0-9_\-.]+)(?P<sep>\s*=\s*)(?P<rest>.*)$")

ROOT = ""


@dataclass
class _KeyLine:
    index: int
    indent: str
    sep: str
    value: str
    trailer: str
    newline: str


def _split_newline(line: str) -> tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def _split_value(rest: str) -> tuple[str, str]:
    """Split ``rest`` into the raw value and the trailing whitespace/comment."""
    if rest[:1] in ('"', "'"):
        quote = rest[0]
        i = 1
        while i < len(rest):
            if quote == '"' and rest[i] == "\\":
                i += 2
                continue
            if rest[i] == quote:
                break
            i += 1
        end = min(i + 1, len(rest))
    else:
        hash_at = rest.find("#")
        end = len(rest) if hash_at < 0 else hash_at
        end = len(rest[:end].rstrip())
    return rest[:end], rest[end:]


def format_value(value: Any) -> str:
    """Encode a Python value as a TOML scalar."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    raise TypeError(f"Unsupported config value type: {type(value).__name__}")


class ConfigDocument:
    """A TOML file held as lines, addressable by ``(section, key)``."""

    def __init__(self, lines: list[str]):
        self._lines = lines
        self._index: dict[tuple[str, str], _KeyLine] = {}
        self._section_ends: dict[str, int] = {}
        self._reindex()

    @classmethod
    def parse(cls, text: str) -> ConfigDocument:
        return cls(text.splitlines(keepends=True))

    @classmethod
    def load(cls, path: Path) -> ConfigDocument:
        try:
            return cls.parse(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigRewriteError(f"Cannot read {path}: {exc}") from exc

    def _reindex(self) -> None:
        self._index.clear()
        self._section_ends = {ROOT: 0}
        section = ROOT
        for i, line in enumerate(self._lines):
            body, newline = _split_newline(line)
            stripped = body.strip()
            if not stripped or stripped.startswith("#"):
                continue
            header = _SECTION_RE.match(body)
            if header and not _KEY_RE.match(body):
                section = header.group("name")
                self._section_ends[section] = i + 1
                continue
            match = _KEY_RE.match(body)
            if match is None:
                continue
            value, trailer = _split_value(match.group("rest"))
            # First occurrence wins, as in TOML a duplicate key is invalid anyway
            self._index.setdefault(
                (section, match.group("key")),
                _KeyLine(i, match.group("indent"), match.group("sep"), value, trailer, newline),
            )
            self._section_ends[section] = i + 1

    def __contains__(self, item: tuple[str, str]) -> bool:
        return item in self._index

    def get(self, section: str, key: str) -> str | None:
        """Return the raw (still encoded) value of ``key`` in ``section``."""
        entry = self._index.get((section, key))
        return entry.value if entry else None

    def get_value(self, section: str, key: str) -> Any:
        """Return the decoded scalar value of ``key`` in ``section``."""
        raw = self.get(section, key)
        if raw is None:
            return None
        if raw in ("true", "false"):
            return raw == "true"
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            return raw[1:-1]
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def set(self, section: str, key: str, value: Any) -> None:
        """Rewrite one key in place, preserving its indentation and comment.

        A key that does not exist yet is appended to the end of its section
        (the section is created at the end of the file when missing).
        """
        encoded = format_value(value)
        entry = self._index.get((section, key))
        if entry is not None:
            self._lines[entry.index] = (
                f"{entry.indent}{key}{entry.sep}{encoded}{entry.trailer}{entry.newline}"
            )
            entry.value = encoded
            return

        if section not in self._section_ends:
            if self._lines and not self._lines[-1].endswith("\n"):
                self._lines[-1] += "\n"
            self._lines.extend(["\n", f"[{section}]\n"])
            insert_at = len(self._lines)
        else:
            insert_at = self._section_ends[section]
            if insert_at > 0 and not self._lines[insert_at - 1].endswith("\n"):
                self._lines[insert_at - 1] += "\n"
        self._lines.insert(insert_at, f"{key} = {encoded}\n")
        self._reindex()

    def update(self, values: Mapping[tuple[str, str], Any]) -> None:
        for (section, key), value in values.items():
            self.set(section, key, value)

    def dumps(self) -> str:
        return "".join(self._lines)

    def save(self, path: Path) -> None:
        try:
            atomic_write_text(path, self.dumps())
        except OSError as exc:
            raise ConfigRewriteError(f"Cannot write {path}: {exc}") from exc


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temporary sibling of ``path`` and rename it into place."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o777)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def rewrite_config(path: Path, values: Mapping[tuple[str, str], Any]) -> ConfigDocument:
    """Load ``path``, apply ``values`` and write it back atomically."""
    document = ConfigDocument.load(path)
    document.update(values)
    document.save(path)
    return document


def join_list(items: Iterable[str]) -> str:
    return ",".join(items)
