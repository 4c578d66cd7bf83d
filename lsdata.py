"""
LSD (Less Syntax Data) - Runtime Loader

A strict, data-only, zero-dependency parser for LSD files. A document is
made of three kinds of node: values (words and strings), lists (``[]``)
and levels (``{}``). A file that does not start with a list or a level is
read as a level whose braces are implicit.

Usage:
    import lsdata

    # Load from string
    data = lsdata.loads('''
    server.host localhost
    server.port 8080  # Default port
    mirrors [ a.example.org b.example.org ]
    ''')

    # Load from file
    with open('config.lsd', 'r') as f:
        data = lsdata.load(f)

    # Pull nested values out of the tree
    lsdata.get_value(data, 'server.port')                # '8080'
    lsdata.get_parsed(data, lsdata.key('server', 'port'), int)  # 8080
    lsdata.get_value(data, 'mirrors.1')                  # 'b.example.org'
"""

import codecs
import io
import logging
import re
from typing import Any, Callable, Optional, Sequence, TextIO, Tuple, Union

__all__ = [
    'load', 'loads', 'load_path',
    'key', 'lookup', 'get_value', 'get_parsed', 'get_list', 'get_level', 'set_value',
    'ParseError', 'ReadFailure', 'UnexpectedCharAtFileEnd', 'UnexpectedStringEnd',
    'UnexpectedCharEscapeEnd', 'UnexpectedCharInByteEscape',
    'UnexpectedCharInUnicodeEscape', 'ExpectedKeyOrEnd',
    'ExpectedKeyPartAfterKeySeparator', 'ExpectedLSDAfterKey', 'ExpectedListLSDOrEnd',
    'KeyCollisionShouldBeLevelButIsNot', 'KeyCollisionKeyAlreadyExists',
    'ShapeError',
]

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = 'utf-8'
DEFAULT_CHUNK_SIZE = 8192

# ==========================================
# Data Structures
# ==========================================

# Value -> str, List -> list, Level -> dict
Node = Union[str, list, dict]
KeyPathPart = Union[str, int]

INLINE_WHITESPACE = ' \t'
LINE_TERMINATORS = '\r\n'
QUOTES = '"\''
COMMENT = '#'

# Characters that end a word, depending on where the word is read
VALUE_STOP = INLINE_WHITESPACE + LINE_TERMINATORS + QUOTES + COMMENT + '}'
KEY_STOP = VALUE_STOP + '{[].'
LIST_STOP = VALUE_STOP + '{[]'

HEX_DIGITS = frozenset('0123456789abcdefABCDEF')

SIMPLE_ESCAPES = {
    '"': '"', '\\': '\\', "'": "'", '0': '\0',
    'a': '\a', 'b': '\b', 't': '\t', 'n': '\n',
    'v': '\v', 'f': '\f', 'r': '\r',
}

_INDEX_RE = re.compile(r'\d+\Z', re.ASCII)


class ParseError(Exception):
    """Base class of every error raised while parsing a document."""

    message = 'Invalid document'

    def __init__(self, message: Optional[str] = None, line: int = 0, col: int = 0):
        self.message = message or self.message
        super().__init__(f"Parse error at {line}:{col}: {self.message}")
        self.line = line
        self.col = col


class ReadFailure(ParseError):
    message = 'Unable to read input'


class UnexpectedCharAtFileEnd(ParseError):
    message = 'Unexpected characters after the document root'


class UnexpectedStringEnd(ParseError):
    message = 'Input ended inside a string'


class UnexpectedCharEscapeEnd(ParseError):
    message = 'Input ended after escape or escape is unknown'


class UnexpectedCharInByteEscape(ParseError):
    message = 'Invalid byte escape'


class UnexpectedCharInUnicodeEscape(ParseError):
    message = 'Invalid unicode escape'


class ExpectedKeyOrEnd(ParseError):
    message = "Expected key or end of level '}'"


class ExpectedKeyPartAfterKeySeparator(ParseError):
    message = "Expected key part after '.'"


class ExpectedLSDAfterKey(ParseError):
    message = 'Expected value, list or level after key'


class ExpectedListLSDOrEnd(ParseError):
    message = "Expected list item or end of list ']'"


class KeyCollisionShouldBeLevelButIsNot(ParseError):
    def __init__(self, key: str, line: int = 0, col: int = 0):
        self.key = key
        super().__init__(f"Key '{key}' should be a level but is not", line, col)


class KeyCollisionKeyAlreadyExists(ParseError):
    def __init__(self, key: str, line: int = 0, col: int = 0):
        self.key = key
        super().__init__(f"Key '{key}' already exists", line, col)


class ShapeError(LookupError):
    """Node found at a key path is not of the requested kind."""

    def __init__(self, path, expected: str):
        super().__init__(f"Expected {expected} at {_format_path(path)!r}")
        self.path = path
        self.expected = expected

# ==========================================
# Cursor
# ==========================================

class _Cursor:
    """One character of lookahead over a lazily read stream."""

    def __init__(self, stream, encoding: str = DEFAULT_ENCODING,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.stream = stream
        self.encoding = encoding
        self.chunk_size = chunk_size
        self.decoder = None

        self.buffer = ''
        self.pos = 0
        self.exhausted = False
        self.started = False

        self.line = 1
        self.col = 1

    def error(self, error_class, *args):
        raise error_class(*args, line=self.line, col=self.col)

    def fill(self):
        try:
            chunk = self.stream.read(self.chunk_size)
            if isinstance(chunk, (bytes, bytearray)):
                if self.decoder is None:
                    logger.debug(f"Decoding binary stream as {self.encoding}")
                    self.decoder = codecs.getincrementaldecoder(self.encoding)()
                final = not chunk
                chunk = self.decoder.decode(chunk, final=final)
                if final and not chunk:
                    self.exhausted = True
            elif not chunk:
                self.exhausted = True
        except (OSError, UnicodeDecodeError) as e:
            raise ReadFailure(str(e), self.line, self.col) from e

        if not self.started and chunk:
            self.started = True
            if chunk.startswith('\ufeff'):
                chunk = chunk[1:]
        self.buffer = chunk
        self.pos = 0

    def peek(self) -> Optional[str]:
        while self.pos >= len(self.buffer):
            if self.exhausted:
                return None
            self.fill()
        return self.buffer[self.pos]

    def accept(self) -> str:
        """Consume the character returned by the last peek()."""
        ch = self.buffer[self.pos]
        self.pos += 1
        if ch == '\n':
            self.line += 1
            self.col = 1
        else:
            self.col += 1
        return ch

    def accept_if(self, chars: str) -> Optional[str]:
        ch = self.peek()
        if ch is not None and ch in chars:
            return self.accept()
        return None

    def read(self) -> Optional[str]:
        if self.peek() is None:
            return None
        return self.accept()

# ==========================================
# Reader
# ==========================================

class _LSDReader:
    def __init__(self, cursor: _Cursor):
        self.cursor = cursor

    def error(self, error_class, *args):
        self.cursor.error(error_class, *args)

    # -- Whitespace & comments ---------------

    def skip_iws(self) -> str:
        chars = []
        while True:
            ch = self.cursor.accept_if(INLINE_WHITESPACE)
            if ch is None:
                return ''.join(chars)
            chars.append(ch)

    def skip_nws(self) -> bool:
        """Skip blank space, line breaks and comments.

        Returns True when at least one line terminator was crossed.
        """
        self.skip_iws()
        crossed_newline = False
        while True:
            if self.cursor.accept_if(LINE_TERMINATORS):
                crossed_newline = True
            elif self.cursor.accept_if(COMMENT):
                while True:
                    ch = self.cursor.peek()
                    if ch is None or ch in LINE_TERMINATORS:
                        break
                    self.cursor.accept()
            else:
                return crossed_newline
            self.skip_iws()

    # -- Words & strings ---------------

    def read_word(self, stop: str) -> Optional[str]:
        chars = []
        while True:
            ch = self.cursor.peek()
            if ch is None or ch in stop:
                break
            chars.append(self.cursor.accept())
        return ''.join(chars) or None

    def read_string(self) -> Optional[str]:
        closing = self.cursor.accept_if(QUOTES)
        if closing is None:
            return None

        content = []
        while True:
            ch = self.cursor.read()
            if ch is None:
                self.error(UnexpectedStringEnd)
            if ch == closing:
                return ''.join(content)
            if ch == '\\':
                content.append(self.read_escape())
            else:
                content.append(ch)

    def read_string_char(self) -> str:
        ch = self.cursor.read()
        if ch is None:
            self.error(UnexpectedStringEnd)
        return ch

    def read_hex(self, digits: int, error_class) -> int:
        chars = [self.read_string_char() for _ in range(digits)]
        if not all(ch in HEX_DIGITS for ch in chars):
            self.error(error_class)
        return int(''.join(chars), 16)

    def read_escape(self) -> str:
        ch = self.cursor.read()
        if ch is None:
            self.error(UnexpectedCharEscapeEnd)
        lowered = ch.lower()
        if lowered in SIMPLE_ESCAPES:
            return SIMPLE_ESCAPES[lowered]
        if lowered == 'x':
            return self.read_byte_escape()
        if lowered == 'u':
            return self.read_unicode_escape()
        self.error(UnexpectedCharEscapeEnd, f"Unknown escape sequence: \\{ch}")

    def read_escape_prefix(self, letter: str, error_class):
        backslash = self.read_string_char()
        escape = self.read_string_char()
        if backslash != '\\' or escape.lower() != letter:
            self.error(error_class)

    def read_byte_escape(self) -> str:
        data = bytearray([self.read_hex(2, UnexpectedCharInByteEscape)])

        # Leading one-bits of the lead byte give the sequence length
        leading_ones = 8 - (~data[0] & 0xFF).bit_length()
        for _ in range(leading_ones - 1):
            self.read_escape_prefix('x', UnexpectedCharInByteEscape)
            data.append(self.read_hex(2, UnexpectedCharInByteEscape))

        try:
            return data.decode('utf-8')
        except UnicodeDecodeError:
            self.error(UnexpectedCharInByteEscape, f"Invalid UTF-8 sequence: {data.hex()}")

    def read_unicode_escape(self) -> str:
        first = self.read_hex(4, UnexpectedCharInUnicodeEscape)
        if not 0xD800 <= first <= 0xDFFF:
            return chr(first)

        self.read_escape_prefix('u', UnexpectedCharInUnicodeEscape)
        second = self.read_hex(4, UnexpectedCharInUnicodeEscape)
        if not (0xD800 <= first <= 0xDBFF and 0xDC00 <= second <= 0xDFFF):
            self.error(UnexpectedCharInUnicodeEscape,
                       f"Invalid surrogate pair: \\u{first:04x}\\u{second:04x}")
        return chr(0x10000 + ((first - 0xD800) << 10) + (second - 0xDC00))

    # -- Values ---------------

    def read_fragment(self, stop: str) -> Optional[str]:
        word = self.read_word(stop)
        if word is not None:
            return word
        return self.read_string()

    def read_value(self, stop: str = VALUE_STOP) -> Optional[str]:
        """Join fragments separated by spaces/tabs, keeping the spacing."""
        result = self.read_fragment(stop)
        if result is None:
            return None
        while True:
            spacing = self.skip_iws()
            fragment = self.read_fragment(stop)
            if fragment is None:
                return result
            result += spacing + fragment

    def read_key_part(self) -> Optional[str]:
        parts = []
        while True:
            part = self.read_fragment(KEY_STOP)
            if part is None:
                break
            parts.append(part)
        return ''.join(parts) if parts else None

    def read_key_path(self) -> Optional[list]:
        first = self.read_key_part()
        if first is None:
            return None
        path = [first]
        while self.cursor.accept_if('.'):
            part = self.read_key_part()
            if part is None:
                self.error(ExpectedKeyPartAfterKeySeparator)
            path.append(part)
        return path

    # -- Structure ---------------

    def read_node(self) -> Optional[Node]:
        node = self.read_list()
        if node is None:
            node = self.read_level()
        if node is None:
            node = self.read_value()
        return node

    def read_list_item(self) -> Optional[Node]:
        node = self.read_list()
        if node is None:
            node = self.read_level()
        if node is None:
            node = self.read_value(LIST_STOP)
        return node

    def read_list(self) -> Optional[list]:
        if not self.cursor.accept_if('['):
            return None
        self.skip_nws()

        items = []
        while not self.cursor.accept_if(']'):
            item = self.read_list_item()
            if item is None:
                self.error(ExpectedListLSDOrEnd)
            items.append(item)
            self.skip_nws()
        return items

    def read_level(self) -> Optional[dict]:
        if not self.cursor.accept_if('{'):
            return None
        self.skip_nws()
        return self.read_level_body(braced=True)

    def read_level_body(self, braced: bool) -> dict:
        level = {}
        while True:
            if braced and self.cursor.accept_if('}'):
                return level

            path = self.read_key_path()
            if path is None:
                if braced:
                    self.error(ExpectedKeyOrEnd)
                return level

            self.skip_nws()
            node = self.read_node()
            if node is None:
                self.error(ExpectedLSDAfterKey)
            self.skip_nws()

            try:
                merge_level(level, expand_key_path(path, node))
            except (KeyCollisionShouldBeLevelButIsNot, KeyCollisionKeyAlreadyExists) as e:
                raise type(e)(e.key, self.cursor.line, self.cursor.col) from None

    def expect_end(self):
        self.skip_nws()
        if self.cursor.peek() is not None:
            self.error(UnexpectedCharAtFileEnd)

    def parse(self) -> Union[list, dict]:
        crossed_newline = self.skip_nws()

        root = self.read_list()
        if root is not None:
            logger.debug(f"Root is a list (after newline: {crossed_newline})")
            self.expect_end()
            return root

        root = self.read_level()
        if root is not None:
            logger.debug(f"Root is a braced level (after newline: {crossed_newline})")
            self.expect_end()
            return root

        logger.debug(f"Root is a bare level (after newline: {crossed_newline})")
        root = self.read_level_body(braced=False)
        self.expect_end()
        return root

# ==========================================
# Key Path Merging
# ==========================================

def expand_key_path(path: Sequence[str], node: Node) -> dict:
    """Wrap *node* into single-key levels, one per key part.

    ``['a', 'b', 'c'], '10'`` becomes ``{'a': {'b': {'c': '10'}}}``.
    """
    result = node
    for part in reversed(path):
        result = {part: result}
    return result


def merge_level(target: dict, level: dict) -> None:
    """Merge *level* into *target* in place.

    Levels are merged recursively. Values and lists never replace an
    existing entry, and a level can only be merged into another level.
    """
    for k, node in level.items():
        if isinstance(node, dict):
            existing = target.setdefault(k, {})
            if not isinstance(existing, dict):
                raise KeyCollisionShouldBeLevelButIsNot(k)
            merge_level(existing, node)
        else:
            if k in target:
                raise KeyCollisionKeyAlreadyExists(k)
            target[k] = node

# ==========================================
# Key Paths & Lookup
# ==========================================

def key(*parts: KeyPathPart) -> Tuple[KeyPathPart, ...]:
    """Build a key path from string keys and non-negative integer indices.

    Strings are kept whole, so keys that contain dots stay addressable:
    ``key('servers', 0, 'example.org')``.
    """
    for part in parts:
        if isinstance(part, bool) or not isinstance(part, (str, int)):
            raise TypeError(f"Key path part must be str or int, got {type(part).__name__}")
        if isinstance(part, int) and part < 0:
            raise ValueError(f"Key path index must be non-negative, got {part}")
    return tuple(parts)


def _split_path(path) -> Sequence[KeyPathPart]:
    if isinstance(path, str):
        return path.split('.') if path else ()
    return path


def _format_path(path) -> str:
    if isinstance(path, str):
        return path
    return '.'.join(str(part) for part in path)


def _as_index(part: KeyPathPart) -> Optional[int]:
    if isinstance(part, int):
        return part
    if _INDEX_RE.match(part):
        return int(part)
    return None


def lookup(node: Node, path) -> Optional[Node]:
    """Return the node at *path*, or None when any segment is missing."""
    for part in _split_path(path):
        if isinstance(node, dict):
            k = str(part)
            if k not in node:
                return None
            node = node[k]
        elif isinstance(node, list):
            index = _as_index(part)
            if index is None or not 0 <= index < len(node):
                return None
            node = node[index]
        else:
            return None
    return node


def _lookup_as(node: Node, path, kind: type, expected: str, invalid: Optional[Callable[[], Exception]]):
    found = lookup(node, path)
    if found is None:
        return None
    if not isinstance(found, kind):
        raise invalid() if invalid is not None else ShapeError(path, expected)
    return found


def get_value(node: Node, path, invalid: Optional[Callable[[], Exception]] = None) -> Optional[str]:
    """Return the value at *path*, None if missing.

    Raises ``invalid()`` (``ShapeError`` by default) if the node is a
    list or a level.
    """
    return _lookup_as(node, path, str, 'value', invalid)


def get_list(node: Node, path, invalid: Optional[Callable[[], Exception]] = None) -> Optional[list]:
    return _lookup_as(node, path, list, 'list', invalid)


def get_level(node: Node, path, invalid: Optional[Callable[[], Exception]] = None) -> Optional[dict]:
    return _lookup_as(node, path, dict, 'level', invalid)


def get_parsed(node: Node, path, convert: Callable[[str], Any],
               invalid: Optional[Callable[[], Exception]] = None) -> Any:
    """Find the value at *path* and convert it, e.g. ``get_parsed(data, 'port', int)``."""
    value = get_value(node, path, invalid)
    if value is None:
        return None
    try:
        return convert(value)
    except (ValueError, TypeError) as e:
        if invalid is not None:
            raise invalid() from e
        raise ShapeError(path, getattr(convert, '__name__', 'converted value')) from e


def set_value(node: Node, path, text: str, invalid: Optional[Callable[[], Exception]] = None) -> Optional[str]:
    """Replace the existing value at *path* with *text*.

    Returns the previous value, or None (without changing anything) when
    the path does not exist. The tree shape is never changed.
    """
    parts = _split_path(path)
    if not parts:
        raise ValueError("Cannot replace the document root")
    previous = get_value(node, path, invalid)
    if previous is None:
        return None

    parent = lookup(node, parts[:-1])
    last = parts[-1]
    if isinstance(parent, dict):
        parent[str(last)] = text
    else:
        parent[_as_index(last)] = text
    return previous

# ==========================================
# Public API
# ==========================================

def load(fp: TextIO, encoding: str = DEFAULT_ENCODING,
         chunk_size: int = DEFAULT_CHUNK_SIZE) -> Union[dict, list]:
    """Parse LSD from a file-like object (text or binary)."""
    return _LSDReader(_Cursor(fp, encoding, chunk_size)).parse()


def loads(source: str) -> Union[dict, list]:
    """Parse LSD source string."""
    return load(io.StringIO(source))


def load_path(path, encoding: str = DEFAULT_ENCODING) -> Union[dict, list]:
    """Parse LSD from a file on disk."""
    logger.debug(f"Loading {path}")
    try:
        fp = open(path, 'rb')
    except OSError as e:
        raise ReadFailure(str(e)) from e
    with fp:
        return load(fp, encoding)
