"""
Keyword store for FITS headers.

A KeywordList is the ordered sequence of header records of one HDU. Each
Record keeps the exact 80-character card text together with its key
class; typed values are parsed from the card only when asked for.
"""

from typing import Any, Dict, Iterator, List, Optional, Union

from .core import CARD_SIZE, KEY_SIZE
from .errors import KeyNotFoundError, ValidationError
from .header_parser import HeaderParser, KeyClass

_MISSING = object()


class Record:
    """
    One header card and its key class.

    Raises:
        ValidationError: If text is longer than a card or is not printable ASCII
    """

    __slots__ = ("_text", "keyclass")

    def __init__(self, text: str, keyclass: Optional[KeyClass] = None):
        if len(text) > CARD_SIZE:
            raise ValidationError(f"record has {len(text)} characters, a card holds {CARD_SIZE}")
        if not (text.isascii() and text.isprintable()):
            raise ValidationError(f"record is not printable ASCII: {text!r}")
        self._text = text.ljust(CARD_SIZE)
        self.keyclass = keyclass if keyclass is not None else HeaderParser.classify(self._text)

    @property
    def text(self) -> str:
        return self._text

    @property
    def key(self) -> str:
        return self._text[:KEY_SIZE].strip()

    @property
    def value_string(self) -> Optional[str]:
        """Raw value span, None for commentary records."""
        return HeaderParser.split_card(self._text)[1]

    @property
    def value(self) -> Any:
        """Typed value; the free text for COMMENT and HISTORY records."""
        key, value_str, comment = HeaderParser.split_card(self._text)
        if value_str is None:
            return comment.strip()
        return HeaderParser.parse_value(value_str)

    @property
    def comment(self) -> Optional[str]:
        key, value_str, comment = HeaderParser.split_card(self._text)
        return comment if value_str is not None else None

    def copy(self) -> 'Record':
        return Record(self._text, self.keyclass)

    def __eq__(self, other):
        if not isinstance(other, Record):
            return NotImplemented
        return self._text == other._text

    def __hash__(self):
        return hash(self._text)

    def __str__(self):
        return self._text.rstrip()

    def __repr__(self):
        return f"Record({self._text.rstrip()!r}, {self.keyclass.name})"


class KeywordList:
    """
    Ordered header records with a key index.

    The index maps the upper-cased key to the position of its first
    record, so lookups return the first match when keys repeat.
    """

    def __init__(self, records=None):
        self._records: List[Record] = []
        self._index: Dict[str, int] = {}
        for record in records or ():
            self.add(record)

    @classmethod
    def from_cards(cls, cards) -> 'KeywordList':
        """Build a list from raw card strings without validation."""
        keywords = cls()
        for card in cards:
            keywords.add(card)
        return keywords

    def _reindex(self):
        self._index = {}
        for pos, record in enumerate(self._records):
            self._index.setdefault(record.key.upper(), pos)

    def add(self, rec: Union[str, Record], validate: bool = False) -> Record:
        """
        Append a record.

        Args:
            rec: Card text, record template or Record
            validate: Normalise the text through the template parser first

        Returns:
            The stored Record

        Raises:
            ValidationError: If validate is set and the template is malformed,
                or the text does not fit a card
        """
        if isinstance(rec, Record):
            record = rec.copy() if not validate else Record(HeaderParser.parse_template(rec.text))
        elif validate:
            record = Record(HeaderParser.parse_template(rec))
        else:
            record = Record(rec)
        self._index.setdefault(record.key.upper(), len(self._records))
        self._records.append(record)
        return record

    def add_value(self, key: str, value: Any = None, comment: Optional[str] = None) -> Record:
        """Append a canonical card built from a Python value."""
        return self.add(HeaderParser.format_card(key, value, comment))

    def find(self, key: str) -> Optional[Record]:
        """First record whose key equals key, ignoring case."""
        pos = self._index.get(key.strip().upper())
        return self._records[pos] if pos is not None else None

    def get_value(self, key: str, default: Any = _MISSING) -> Any:
        """
        Typed value of the first record with this key.

        Raises:
            KeyNotFoundError: If the key is absent and no default is given
        """
        record = self.find(key)
        if record is None:
            if default is _MISSING:
                raise KeyNotFoundError(f"keyword {key!r} not found")
            return default
        return record.value

    def modify(self, key: str, new_value: Union[str, Any]) -> Record:
        """
        Rewrite the value of the first record with this key.

        A string new_value is read as a template value (``'text'``, ``12``,
        ``T``, optionally followed by ``/ comment``); other Python values
        are formatted directly. The old comment is kept unless a new one is
        given.

        Raises:
            KeyNotFoundError: If the key is absent
            ValidationError: If the new value cannot be formatted
        """
        pos = self._index.get(key.strip().upper())
        if pos is None:
            raise KeyNotFoundError(f"keyword {key!r} not found")
        old = self._records[pos]
        name = old.key

        if isinstance(new_value, str):
            card = HeaderParser.parse_template(f"{name} = {new_value}")
        else:
            card = HeaderParser.format_card(name, new_value)

        _, value_str, comment = HeaderParser.split_card(card)
        if comment is None and old.comment:
            field = card[KEY_SIZE + 2:].rstrip()
            card = HeaderParser.assemble(name, field, old.comment)

        record = Record(card, old.keyclass)
        self._records[pos] = record
        return record

    def remove(self, key: str) -> int:
        """Remove every record with this key; returns how many were removed."""
        target = key.strip().upper()
        kept = [r for r in self._records if r.key.upper() != target]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._reindex()
        return removed

    def remove_by_substring(self, s: str) -> int:
        """Remove every record whose card text contains s (case-sensitive)."""
        kept = [r for r in self._records if s not in r.text]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._reindex()
        return removed

    def copy(self) -> 'KeywordList':
        """Deep duplicate."""
        dup = KeywordList()
        dup._records = [r.copy() for r in self._records]
        dup._index = dict(self._index)
        return dup

    def end(self) -> Optional[Record]:
        """Last record, or None for an empty list."""
        return self._records[-1] if self._records else None

    @staticmethod
    def classify(rec: Union[str, Record]) -> KeyClass:
        text = rec.text if isinstance(rec, Record) else rec
        return HeaderParser.classify(text)

    def iterate(self) -> Iterator[Record]:
        return iter(list(self._records))

    def emittable(self) -> Iterator[Record]:
        """Records the writer outputs, in order."""
        return (r for r in self._records if r.keyclass.emitted)

    def format(self) -> str:
        """Listing of all records, one card per line."""
        return '\n'.join(r.text.rstrip() for r in self._records)

    def __iter__(self) -> Iterator[Record]:
        return self.iterate()

    def __len__(self):
        return len(self._records)

    def __getitem__(self, index):
        if isinstance(index, str):
            return self.get_value(index)
        return self._records[index]

    def __contains__(self, key):
        if isinstance(key, Record):
            return key in self._records
        return key.strip().upper() in self._index

    def __eq__(self, other):
        if not isinstance(other, KeywordList):
            return NotImplemented
        return self._records == other._records

    def __repr__(self):
        return f"KeywordList({len(self._records)} records)"
