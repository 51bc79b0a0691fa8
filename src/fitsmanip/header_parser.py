"""
FITS card parser.

Splits 80-character header cards into key, value span and comment, parses
value spans into Python values on request, normalises free-form record
templates into canonical fixed-format cards and classifies keys into the
classes that decide which records the writer regenerates.
"""

import re
from enum import IntEnum
from typing import Any, Optional, Tuple

from .core import CARD_SIZE, KEY_SIZE
from .errors import MalformedHeaderError, ValidationError


class KeyClass(IntEnum):
    """
    Key classes, ordered like the cfitsio key classes.

    Records above MANDATORY are owned by the user and emitted by the
    writer; the others are regenerated from the payload or dropped.
    """
    STRUCTURAL = 10
    COMPRESSED = 20
    MANDATORY = 30
    WCS = 110
    COMMENT = 130
    HISTORY = 135
    USER = 150

    @property
    def emitted(self) -> bool:
        return self > KeyClass.MANDATORY


COMMENTARY_KEYS = ('COMMENT', 'HISTORY', '')

_REAL = r'[+-]?(?:\d+\.?\d*|\.\d+)(?:[eEdD][+-]?\d+)?'

_CLASS_PATTERNS = [
    (KeyClass.STRUCTURAL, re.compile(
        r'^(?:SIMPLE|XTENSION|BITPIX|NAXIS|EXTEND|PCOUNT|GCOUNT|GROUPS|TFIELDS|THEAP|END'
        r'|NAXIS\d+|TTYPE\d+|TFORM\d+|TBCOL\d+|TDIM\d+)$')),
    (KeyClass.COMPRESSED, re.compile(
        r'^(?:ZIMAGE|ZCMPTYPE|ZBITPIX|ZNAXIS|ZQUANTIZ|ZDITHER0|ZSIMPLE|ZTENSION|ZEXTEND'
        r'|ZBLOCKED|ZPCOUNT|ZGCOUNT|ZHECKSUM|ZDATASUM|ZBLANK|ZSCALE|ZZERO'
        r'|ZNAXIS\d+|ZTILE\d+|ZNAME\d+|ZVAL\d+)$')),
    (KeyClass.MANDATORY, re.compile(
        r'^(?:BZERO|BSCALE|BLANK|CHECKSUM|DATASUM|TSCAL\d+|TZERO\d+|TNULL\d+)$')),
    (KeyClass.WCS, re.compile(
        r'^(?:(?:WCSAXES|LONPOLE|LATPOLE|EQUINOX|RADESYS|WCSNAME)[A-Z]?'
        r'|(?:CRPIX|CRVAL|CDELT|CTYPE|CUNIT)\d+[A-Z]?|CROTA\d+'
        r'|(?:CD|PC|PV|PS)\d+_\d+[A-Z]?|EPOCH|RADECSYS|MJD-OBS|DATE-OBS)$')),
]


class HeaderParser:
    """
    Parser for single FITS cards and record templates.

    Cards are kept as text by the keyword store; this class only finds the
    value span and converts it when a typed value is requested.
    """

    _KEY_PATTERN = re.compile(r'^[A-Z0-9_-]{1,8}$')

    # FITS value type patterns
    _INTEGER_PATTERN = re.compile(r'^[+-]?\d+$')
    _FLOAT_PATTERN = re.compile(rf'^{_REAL}$')
    _LOGICAL_PATTERN = re.compile(r'^[TF]$')
    _COMPLEX_PATTERN = re.compile(rf'^\(?\s*({_REAL})\s*(?:,\s*|\s+)({_REAL})\s*\)?$')

    @classmethod
    def split_card(cls, card: str) -> Tuple[str, Optional[str], Optional[str]]:
        """
        Split a card into key, value span and comment.

        Returns:
            (key, value, comment); value is None for commentary cards, and
            for those the free text is returned as the comment.
        """
        card = card.ljust(CARD_SIZE)
        key = card[:KEY_SIZE].strip()

        if key in COMMENTARY_KEYS or card[KEY_SIZE] != '=':
            return key, None, card[KEY_SIZE:].rstrip()

        value_comment = card[KEY_SIZE + 1:]
        comment_start = cls._find_comment_separator(value_comment)
        if comment_start != -1:
            value_str = value_comment[:comment_start].strip()
            comment = value_comment[comment_start + 1:].strip()
        else:
            value_str = value_comment.strip()
            comment = None
        return key, value_str, comment

    @classmethod
    def check_card(cls, card: str, hdu_index: Optional[int] = None):
        """Raise MalformedHeaderError unless card is a valid 80-char record."""
        if len(card) != CARD_SIZE:
            raise MalformedHeaderError(
                f"card has {len(card)} characters instead of {CARD_SIZE}", hdu_index)
        if not (card.isascii() and card.isprintable()):
            raise MalformedHeaderError(
                f"card contains non-printable characters: {card!r}", hdu_index)
        key = card[:KEY_SIZE].rstrip()
        if ' ' in key:
            raise MalformedHeaderError(f"embedded space in keyword {key!r}", hdu_index)

    @classmethod
    def _find_comment_separator(cls, value_comment: str) -> int:
        """
        Find the position of the comment separator ('/').

        Handles quoted strings properly to avoid false positives.
        """
        if "'" not in value_comment:
            return value_comment.find('/')

        in_quotes = False
        i = 0
        while i < len(value_comment):
            char = value_comment[i]
            if char == "'":
                if in_quotes and i + 1 < len(value_comment) and value_comment[i + 1] == "'":
                    # Escaped quote inside string
                    i += 2
                    continue
                in_quotes = not in_quotes
            elif char == '/' and not in_quotes:
                return i
            i += 1
        return -1

    @classmethod
    def parse_value(cls, value_str: Optional[str]) -> Any:
        """
        Parse a FITS value span into the matching Python type.

        Strings give str, T/F give bool, integers int, decimals float and
        complex pairs complex. An empty span is an undefined value (None);
        anything else is returned unchanged as a string.
        """
        if value_str is None:
            return None
        value_str = value_str.strip()
        if not value_str:
            return None

        if value_str.startswith("'"):
            return cls._parse_string_value(value_str)

        if cls._LOGICAL_PATTERN.match(value_str):
            return value_str == 'T'

        if cls._INTEGER_PATTERN.match(value_str):
            return int(value_str)

        if cls._FLOAT_PATTERN.match(value_str):
            return float(value_str.replace('D', 'E').replace('d', 'e'))

        complex_match = cls._COMPLEX_PATTERN.match(value_str)
        if complex_match:
            real_part, imag_part = (float(g.replace('D', 'E').replace('d', 'e'))
                                    for g in complex_match.groups())
            return complex(real_part, imag_part)

        return value_str

    @classmethod
    def _parse_string_value(cls, quoted_str: str) -> str:
        """
        Parse a quoted FITS string value.

        Doubled quotes are unescaped; trailing blanks are not significant.
        """
        content, _ = cls._scan_string(quoted_str)
        return content.rstrip()

    @staticmethod
    def _scan_string(text: str) -> Tuple[str, int]:
        """Return the unescaped content of the leading quoted string and the
        index just past its closing quote (-1 when unterminated)."""
        chars = []
        i = 1
        while i < len(text):
            char = text[i]
            if char == "'":
                if i + 1 < len(text) and text[i + 1] == "'":
                    chars.append("'")
                    i += 2
                    continue
                return ''.join(chars), i + 1
            chars.append(char)
            i += 1
        return ''.join(chars), -1

    @classmethod
    def check_key(cls, key: str) -> str:
        key = key.upper()
        if not cls._KEY_PATTERN.match(key):
            raise ValidationError(f"invalid keyword name {key!r}")
        return key

    @classmethod
    def format_value(cls, value: Any) -> str:
        """Fixed-format value field for a Python value."""
        if value is None:
            return ''
        if isinstance(value, bool):
            return ('T' if value else 'F').rjust(20)
        if isinstance(value, int):
            return str(value).rjust(20)
        if isinstance(value, float):
            return cls._format_real(value).rjust(20)
        if isinstance(value, complex):
            return f"({cls._format_real(value.real)}, {cls._format_real(value.imag)})".rjust(20)
        if isinstance(value, str):
            if not value.isascii() or not value.isprintable():
                raise ValidationError(f"string value is not printable ASCII: {value!r}")
            return "'" + value.replace("'", "''").ljust(8) + "'"
        raise ValidationError(f"cannot store {type(value).__name__} in a FITS card")

    @staticmethod
    def _format_real(value: float) -> str:
        if value != value or value in (float('inf'), float('-inf')):
            raise ValidationError(f"{value} cannot be written to a FITS card")
        text = repr(float(value)).upper()
        if '.' not in text and 'E' not in text:
            text += '.0'
        return text

    @classmethod
    def assemble(cls, key: str, field: Optional[str], comment: Optional[str]) -> str:
        """Join key, formatted value field and comment into an 80-char card."""
        if key in COMMENTARY_KEYS:
            text = key.ljust(KEY_SIZE) + (field or '')
            if len(text) > CARD_SIZE:
                raise ValidationError(f"{key} text longer than {CARD_SIZE - KEY_SIZE} characters")
            return text.ljust(CARD_SIZE)

        card = key.ljust(KEY_SIZE) + '= ' + (field or '')
        if len(card) > CARD_SIZE:
            raise ValidationError(f"value of {key} does not fit in a card")
        if comment:
            card = (card.ljust(30) if field is not None and len(card) < 30 else card) + ' / ' + comment
        return card[:CARD_SIZE].ljust(CARD_SIZE)

    @classmethod
    def format_card(cls, key: str, value: Any = None, comment: Optional[str] = None) -> str:
        """Canonical card for a key, a Python value and an optional comment."""
        key = key.upper()
        if key in COMMENTARY_KEYS:
            return cls.assemble(key, '' if value is None else str(value), None)
        key = cls.check_key(key)
        if key == 'END':
            raise ValidationError("END is reserved")
        return cls.assemble(key, cls.format_value(value), comment)

    @classmethod
    def parse_template(cls, template: str) -> str:
        """
        Normalise a free-form record template into a canonical card.

        Accepts ``KEY = value / comment``, ``KEY value / comment``,
        ``COMMENT text``, ``HISTORY text`` and blank templates.

        Raises:
            ValidationError: If the template cannot be turned into a card
        """
        text = template.strip()
        if not text:
            return ' ' * CARD_SIZE
        if text.startswith('-'):
            raise ValidationError(f"deletion templates are not supported: {template!r}")

        match = re.match(r"([^\s=]+)(.*)$", text, re.DOTALL)
        token, rest = match.group(1), match.group(2)
        key = token.upper()

        if key in ('COMMENT', 'HISTORY'):
            return cls.assemble(key, rest.strip(), None)

        key = cls.check_key(key)
        if key == 'END':
            raise ValidationError("END is reserved")

        rest = rest.lstrip()
        if rest.startswith('='):
            rest = rest[1:].lstrip()

        field = None
        if rest.startswith("'"):
            content, end = cls._scan_string(rest)
            if end == -1:
                raise ValidationError(f"unterminated string in template {template!r}")
            field = cls.format_value(content.rstrip())
            rest = rest[end:]
        elif rest.startswith('('):
            end = rest.find(')')
            if end == -1:
                raise ValidationError(f"unterminated complex value in template {template!r}")
            field = cls._token_field(rest[:end + 1], template)
            rest = rest[end + 1:]
        elif rest and not rest.startswith('/'):
            token = re.match(r"[^\s/]+", rest).group(0)
            field = cls._token_field(token, template)
            rest = rest[len(token):]

        rest = rest.strip()
        comment = None
        if rest.startswith('/'):
            comment = rest[1:].strip()
        elif rest:
            raise ValidationError(f"unexpected text {rest!r} in template {template!r}")

        return cls.assemble(key, field, comment)

    @classmethod
    def _token_field(cls, token: str, template: str) -> str:
        if cls._LOGICAL_PATTERN.match(token):
            return token.rjust(20)
        if cls._INTEGER_PATTERN.match(token):
            return str(int(token)).rjust(20)
        if cls._FLOAT_PATTERN.match(token):
            return token.upper().rjust(20)
        complex_match = cls._COMPLEX_PATTERN.match(token)
        if complex_match and token.startswith('('):
            re_part, im_part = complex_match.groups()
            return f"({re_part.upper()}, {im_part.upper()})".rjust(20)
        # Bare words are strings
        return cls.format_value(token)

    @staticmethod
    def classify(card: str) -> KeyClass:
        """Key class of a card."""
        key = card[:KEY_SIZE].rstrip().upper()
        if key == '' or key == 'COMMENT':
            return KeyClass.COMMENT
        if key == 'HISTORY':
            return KeyClass.HISTORY
        for keyclass, pattern in _CLASS_PATTERNS:
            if pattern.match(key):
                return keyclass
        return KeyClass.USER


def split_cards(header_string: str) -> list:
    """Split a header string into 80-character cards."""
    return [header_string[i:i + CARD_SIZE].ljust(CARD_SIZE)
            for i in range(0, len(header_string), CARD_SIZE)]


def parse_value(value_str: Optional[str]) -> Any:
    """Convenience function for typed value parsing."""
    return HeaderParser.parse_value(value_str)


def parse_template(template: str) -> str:
    """Convenience function for template normalisation."""
    return HeaderParser.parse_template(template)


def format_card(key: str, value: Any = None, comment: Optional[str] = None) -> str:
    """Convenience function for building a canonical card."""
    return HeaderParser.format_card(key, value, comment)


def get_keyclass(card: str) -> KeyClass:
    """Convenience function for key classification."""
    return HeaderParser.classify(card)
