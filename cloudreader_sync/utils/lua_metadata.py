"""
Reader for the `metadata.<ext>.lua` files kept inside a reading-state bundle.

The files are a single Lua table literal (`return { ... }`) written by the
reading application. `parse_lua_table` turns that literal into Python values
and `BundleMetadata` exposes the fields the bundle syncer compares.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cloudreader_sync.errors import DecodeError

logger = logging.getLogger(__name__)

METADATA_NAME_RE = re.compile(r"^metadata\..*\.lua$")

_NUMBER_RE = re.compile(
    r"0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?"
)
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_LONG_BRACKET_RE = re.compile(r"\[(=*)\[")

_ESCAPES = {
    'n': '\n', 't': '\t', 'r': '\r', 'a': '\a', 'b': '\b',
    'f': '\f', 'v': '\v', '\\': '\\', '"': '"', "'": "'", '\n': '\n',
}


class _LuaTableParser:
    """Recursive-descent parser for the literal subset of Lua used in metadata files."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self):
        self._skip()
        if self.text.startswith("return", self.pos):
            self.pos += len("return")
        value = self._value()
        self._skip()
        if self.pos < len(self.text) and self.text[self.pos] == ';':
            self.pos += 1
            self._skip()
        if self.pos != len(self.text):
            raise self._error("Unexpected trailing content")
        return value

    def _error(self, message):
        line = self.text.count("\n", 0, self.pos) + 1
        return DecodeError(f"{message} at line {line}")

    def _skip(self):
        """Skip whitespace and comments."""
        text = self.text
        while self.pos < len(text):
            ch = text[self.pos]
            if ch.isspace():
                self.pos += 1
            elif text.startswith("--", self.pos):
                self.pos += 2
                bracket = _LONG_BRACKET_RE.match(text, self.pos)
                if bracket:
                    self._long_string(bracket)
                else:
                    end = text.find("\n", self.pos)
                    self.pos = len(text) if end == -1 else end + 1
            else:
                break

    def _peek(self):
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _expect(self, ch):
        self._skip()
        if self._peek() != ch:
            raise self._error(f"Expected '{ch}'")
        self.pos += 1

    def _value(self):
        self._skip()
        ch = self._peek()
        if not ch:
            raise self._error("Unexpected end of input")
        if ch == '{':
            return self._table()
        if ch in ('"', "'"):
            return self._quoted_string()
        if ch == '[':
            bracket = _LONG_BRACKET_RE.match(self.text, self.pos)
            if bracket:
                return self._long_string(bracket)
        if ch == '-' or ch.isdigit() or ch == '.':
            return self._number()

        name = _NAME_RE.match(self.text, self.pos)
        if name:
            word = name.group(0)
            if word in ('true', 'false', 'nil'):
                self.pos = name.end()
                return {'true': True, 'false': False, 'nil': None}[word]
        raise self._error(f"Unexpected character {ch!r}")

    def _number(self):
        negative = False
        if self._peek() == '-':
            negative = True
            self.pos += 1
            self._skip()
        match = _NUMBER_RE.match(self.text, self.pos)
        if not match:
            raise self._error("Malformed number")
        self.pos = match.end()
        raw = match.group(0)
        if raw.lower().startswith("0x"):
            value = int(raw, 16)
        elif any(c in raw for c in '.eE'):
            value = float(raw)
        else:
            value = int(raw)
        return -value if negative else value

    def _quoted_string(self):
        quote = self.text[self.pos]
        self.pos += 1
        out = []
        text = self.text
        while True:
            if self.pos >= len(text):
                raise self._error("Unterminated string")
            ch = text[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(out)
            if ch == '\n':
                raise self._error("Newline in string")
            if ch == '\\':
                self.pos += 1
                esc = text[self.pos] if self.pos < len(text) else ""
                if esc in _ESCAPES:
                    out.append(_ESCAPES[esc])
                    self.pos += 1
                elif esc.isdigit():
                    digits = re.match(r"\d{1,3}", text[self.pos:]).group(0)
                    out.append(chr(int(digits)))
                    self.pos += len(digits)
                else:
                    raise self._error(f"Invalid escape \\{esc}")
                continue
            out.append(ch)
            self.pos += 1

    def _long_string(self, bracket):
        close = "]" + bracket.group(1) + "]"
        start = bracket.end()
        end = self.text.find(close, start)
        if end == -1:
            raise self._error("Unterminated long bracket")
        self.pos = end + len(close)
        content = self.text[start:end]
        # A newline right after the opening bracket is not part of the string
        return content[1:] if content.startswith("\n") else content

    def _table(self):
        self._expect('{')
        result = {}
        index = 1
        while True:
            self._skip()
            if self._peek() == '}':
                self.pos += 1
                return result

            if self._peek() == '[' and not _LONG_BRACKET_RE.match(self.text, self.pos):
                self.pos += 1
                key = self._value()
                self._expect(']')
                self._expect('=')
                result[key] = self._value()
            else:
                name = _NAME_RE.match(self.text, self.pos)
                after = name.end() if name else self.pos
                rest = self.text[after:].lstrip()
                if name and name.group(0) not in ('true', 'false', 'nil') \
                        and rest.startswith('=') and not rest.startswith('=='):
                    self.pos = after
                    self._expect('=')
                    result[name.group(0)] = self._value()
                else:
                    result[index] = self._value()
                    index += 1

            self._skip()
            if self._peek() in (',', ';'):
                self.pos += 1
            elif self._peek() != '}':
                raise self._error("Expected ',' or '}'")


def parse_lua_table(text: str):
    """Parse a `return { ... }` literal into nested dicts. Raises DecodeError."""
    return _LuaTableParser(text).parse()


@dataclass
class BundleMetadata:
    last_page: int = 0
    percent_finished: float = 0.0
    doc_pages: int = 0
    status: Optional[str] = None

    @classmethod
    def from_table(cls, table) -> "BundleMetadata":
        if not isinstance(table, dict):
            return cls()

        def number(key, cast):
            value = table.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return cast(0)
            return cast(value)

        summary = table.get('summary')
        status = summary.get('status') if isinstance(summary, dict) else None
        return cls(
            last_page=max(number('last_page', int), 0),
            percent_finished=min(max(number('percent_finished', float), 0.0), 1.0),
            doc_pages=max(number('doc_pages', int), 0),
            status=status if isinstance(status, str) else None,
        )

    @classmethod
    def from_file(cls, path) -> "BundleMetadata":
        """Read a metadata file. Unreadable or unparsable files yield zeroed metadata."""
        try:
            text = Path(path).read_text(encoding='utf-8', errors='replace')
            return cls.from_table(parse_lua_table(text))
        except (OSError, DecodeError) as e:
            logger.warning(f"Could not read bundle metadata {path}: {e}")
            return cls()


def is_metadata_entry(name: str) -> bool:
    return bool(METADATA_NAME_RE.match(name)) and not name.endswith(".old")


def find_effective_entry(bundle_dir) -> Optional[Path]:
    """Most recently modified metadata entry in the bundle, ignoring backups."""
    bundle_dir = Path(bundle_dir)
    if not bundle_dir.is_dir():
        return None

    best, best_mtime = None, None
    for entry in os.scandir(bundle_dir):
        if not entry.is_file() or not is_metadata_entry(entry.name):
            continue
        mtime = entry.stat().st_mtime
        # Ties resolve by name so the choice is stable across scans
        if best is None or mtime > best_mtime or (mtime == best_mtime and entry.name > best.name):
            best, best_mtime = Path(entry.path), mtime
    return best


def entry_timestamp(path) -> int:
    return int(os.stat(path).st_mtime)
