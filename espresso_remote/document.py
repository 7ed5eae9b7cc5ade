"""Minimal Quantum ESPRESSO input document.

Models just enough of the pw.x / dos.x / projwfc.x / bands.x input format for
pipelines to read, edit and write calculation inputs:

- **namelists** (``&CONTROL ... /``) holding ``key = value`` assignments.
  Values are stored as Fortran literal text (``'scf'``, ``.TRUE.``, ``2``)
  so that documents round-trip without reformatting numbers.
- **cards** (``ATOMIC_SPECIES``, ``K_POINTS {crystal_b}`` ...) holding their
  option and raw body lines.

Keys and namelist names are case-insensitive. Card names are upper-cased.
"""

from __future__ import annotations

import copy as _copy
import logging
from dataclasses import dataclass, field
from typing import NamedTuple

logger = logging.getLogger(__name__)

KNOWN_CARDS = frozenset(
    {
        "ATOMIC_SPECIES",
        "ATOMIC_POSITIONS",
        "K_POINTS",
        "CELL_PARAMETERS",
        "OCCUPATIONS",
        "CONSTRAINTS",
        "ATOMIC_VELOCITIES",
        "ATOMIC_FORCES",
        "ADDITIONAL_K_POINTS",
        "SOLVENTS",
        "HUBBARD",
    }
)

_TRUE_LITERALS = {".true.", "true", ".t.", "t"}
_FALSE_LITERALS = {".false.", "false", ".f.", "f"}


def _strip_comment(line: str) -> str:
    """Drop a trailing ``!`` or ``#`` comment that is not inside quotes."""
    quote: str | None = None
    for i, char in enumerate(line):
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char in ("!", "#"):
            return line[:i]
    return line


def _split_assignments(text: str) -> list[str]:
    """Split a namelist body on commas and newlines outside quotes."""
    parts: list[str] = []
    buf: list[str] = []
    quote: str | None = None
    for char in text:
        if quote:
            buf.append(char)
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
            buf.append(char)
        elif char in (",", "\n"):
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(char)
    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _fortran_float(value: str) -> float:
    return float(value.strip().lower().replace("d", "e"))


# ─── Namelists ──────────────────────────────────────────────────────────────


class Namelist:
    """An ordered, case-insensitive set of ``key = value`` assignments."""

    def __init__(self, name: str, values: dict[str, str] | None = None):
        self.name = name.upper()
        self._values: dict[str, str] = {}
        for key, value in (values or {}).items():
            self._values[key.lower()] = value

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._values

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self):
        return self._values.items()

    def get(self, key: str, default: str | None = None) -> str | None:
        """Raw Fortran literal for ``key``."""
        return self._values.get(key.lower(), default)

    def get_string(self, key: str, default: str | None = None) -> str | None:
        value = self.get(key)
        return default if value is None else _unquote(value)

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(_fortran_float(value))
        except ValueError:
            logger.debug("Non-numeric %s = %s in &%s", key, value, self.name)
            return default

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        value = self.get(key)
        if value is None:
            return default
        literal = value.strip().lower()
        if literal in _TRUE_LITERALS:
            return True
        if literal in _FALSE_LITERALS:
            return False
        return default

    def set(self, key: str, value: str) -> None:
        """Set a raw Fortran literal."""
        self._values[key.lower()] = value

    def set_string(self, key: str, value: str) -> None:
        self.set(key, "'" + value.replace("'", "''") + "'")

    def set_int(self, key: str, value: int) -> None:
        self.set(key, str(int(value)))

    def set_bool(self, key: str, value: bool) -> None:
        self.set(key, ".TRUE." if value else ".FALSE.")

    def remove(self, key: str) -> str | None:
        return self._values.pop(key.lower(), None)

    def to_text(self) -> str:
        lines = [f"&{self.name}"]
        lines.extend(f"  {key} = {value}" for key, value in self._values.items())
        lines.append("/")
        return "\n".join(lines)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Namelist):
            return NotImplemented
        return self.name == other.name and self._values == other._values

    def __repr__(self) -> str:
        return f"Namelist({self.name!r}, {self._values!r})"


# ─── Cards ──────────────────────────────────────────────────────────────────


@dataclass
class Card:
    """A card: its upper-cased name, option and body lines."""

    name: str
    option: str = ""
    lines: list[str] = field(default_factory=list)

    def to_text(self) -> str:
        header = f"{self.name} {{{self.option}}}" if self.option else self.name
        return "\n".join([header, *self.lines])


class KPoint(NamedTuple):
    x: float
    y: float
    z: float
    weight: float
    label: str | None = None


class Species(NamedTuple):
    name: str
    mass: float
    pseudo_file: str


def _letter_k_point(fields: list[str]) -> KPoint | None:
    """``<letter> [weight]`` point of a band path card."""
    if len(fields) > 2:
        return None
    try:
        weight = _fortran_float(fields[1]) if len(fields) > 1 else 1.0
    except ValueError:
        return None
    return KPoint(0.0, 0.0, 0.0, weight, fields[0])


# ─── Document ───────────────────────────────────────────────────────────────


class InputDocument:
    """A Quantum ESPRESSO input: ordered namelists followed by cards."""

    def __init__(
        self,
        namelists: list[Namelist] | None = None,
        cards: list[Card] | None = None,
    ):
        self._namelists: dict[str, Namelist] = {}
        for namelist in namelists or []:
            self._namelists[namelist.name] = namelist
        self._cards: dict[str, Card] = {}
        for card in cards or []:
            self.set_card(card)

    @property
    def namelists(self) -> list[Namelist]:
        return list(self._namelists.values())

    @property
    def cards(self) -> list[Card]:
        return list(self._cards.values())

    def copy(self) -> InputDocument:
        """Deep copy; edits to the copy never touch this document."""
        return _copy.deepcopy(self)

    def namelist(self, name: str) -> Namelist | None:
        return self._namelists.get(name.upper())

    def ensure_namelist(self, name: str) -> Namelist:
        """Return the named namelist, appending an empty one if absent."""
        key = name.upper()
        if key not in self._namelists:
            self._namelists[key] = Namelist(key)
        return self._namelists[key]

    def card(self, name: str) -> Card | None:
        return self._cards.get(name.upper())

    def set_card(self, card: Card) -> None:
        card.name = card.name.upper()
        self._cards[card.name] = card

    def cell_units(self) -> str | None:
        """Lower-cased CELL_PARAMETERS option, or None without that card."""
        card = self.card("CELL_PARAMETERS")
        if card is None:
            return None
        return card.option.strip().lower()

    def k_points(self) -> list[KPoint]:
        """Explicit k-points listed in the K_POINTS card.

        Labels come from a trailing ``!`` comment (``0.5 0.5 0.5 20 !L``) or
        from the letter form of ``tpiba_b``/``crystal_b`` cards (``gG 20``).
        Letter points carry zero coordinates, since the letter stands for a
        point the input does not spell out. Automatic and gamma-only meshes
        have no explicit points.
        """
        card = self.card("K_POINTS")
        if card is None:
            return []
        option = card.option.strip().lower()
        if option in ("automatic", "gamma") or not card.lines:
            return []

        try:
            count = int(card.lines[0].split()[0])
        except (IndexError, ValueError):
            logger.debug("K_POINTS card has no point count")
            return []

        points: list[KPoint] = []
        for line in card.lines[1 : 1 + count]:
            body, _, comment = line.partition("!")
            fields = body.split()
            if fields and fields[0][0].isalpha():
                point = _letter_k_point(fields)
                if point is None:
                    logger.debug("Skipping malformed k-point line %r", line)
                else:
                    points.append(point)
                continue
            if len(fields) < 3:
                continue
            try:
                coords = [_fortran_float(f) for f in fields[:3]]
                weight = _fortran_float(fields[3]) if len(fields) > 3 else 1.0
            except ValueError:
                logger.debug("Skipping malformed k-point line %r", line)
                continue
            label = comment.strip() or None
            points.append(KPoint(coords[0], coords[1], coords[2], weight, label))
        return points

    def species(self) -> list[Species]:
        """Entries of the ATOMIC_SPECIES card."""
        card = self.card("ATOMIC_SPECIES")
        if card is None:
            return []
        entries: list[Species] = []
        for line in card.lines:
            fields = _strip_comment(line).split()
            if len(fields) < 3:
                continue
            try:
                mass = _fortran_float(fields[1])
            except ValueError:
                mass = 0.0
            entries.append(Species(fields[0], mass, fields[2]))
        return entries

    def to_text(self) -> str:
        """Render the document as input file text, ending with a newline."""
        blocks = [n.to_text() for n in self._namelists.values()]
        blocks.extend(c.to_text() for c in self._cards.values())
        return "\n".join(blocks) + "\n"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InputDocument):
            return NotImplemented
        return self._namelists == other._namelists and self._cards == other._cards

    def __repr__(self) -> str:
        names = ", ".join(self._namelists)
        cards = ", ".join(self._cards)
        return f"InputDocument(namelists=[{names}], cards=[{cards}])"


def _card_header(line: str) -> tuple[str, str] | None:
    """Return (name, option) if ``line`` opens a known card."""
    stripped = line.strip()
    if not stripped:
        return None
    head, _, rest = stripped.partition(" ")
    for sep in ("{", "("):
        if sep in head:
            head, _, tail = head.partition(sep)
            rest = sep + tail + " " + rest
    name = head.upper()
    if name not in KNOWN_CARDS:
        return None
    option = rest.strip().strip("{}()").strip()
    return name, option


def parse_input(text: str) -> InputDocument:
    """Parse Quantum ESPRESSO input text.

    Args:
        text: Input file contents.

    Returns:
        The parsed document. Unknown top-level lines outside any card are
        ignored with a debug message.

    Raises:
        ValueError: When a namelist is not terminated by ``/``.
    """
    document = InputDocument()
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    i = 0
    current_card: Card | None = None
    while i < len(lines):
        raw = lines[i]
        stripped = raw.strip()
        i += 1

        if stripped.startswith("&"):
            current_card = None
            name = stripped[1:].split()[0] if len(stripped) > 1 else ""
            body: list[str] = []
            inline = stripped[1 + len(name) :]
            if inline.strip():
                body.append(inline)
            terminated = False
            while i < len(lines):
                line = _strip_comment(lines[i])
                i += 1
                if line.strip() == "/":
                    terminated = True
                    break
                body.append(line)
            if not terminated:
                raise ValueError(f"namelist &{name} is not terminated")

            namelist = document.ensure_namelist(name)
            for assignment in _split_assignments("\n".join(body)):
                key, sep, value = assignment.partition("=")
                if not sep:
                    logger.debug("Ignoring %r in &%s", assignment, namelist.name)
                    continue
                namelist.set(key.strip().replace(" ", ""), value.strip())
            continue

        header = _card_header(raw)
        if header is not None:
            current_card = Card(header[0], header[1])
            document.set_card(current_card)
            continue

        if not stripped or stripped.startswith("#"):
            continue
        if current_card is None:
            logger.debug("Ignoring stray input line %r", raw)
            continue
        current_card.lines.append(raw.rstrip())
    return document
