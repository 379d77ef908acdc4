"""Cadastral code value object.

Indonesian land-tax object numbers (NOP) encode the administrative
hierarchy in fixed-width digit groups::

    35 . 75 . 020 . 001 . 001 - 0001 . 0
    |    |    |     |     |     |      kind (jenis)
    |    |    |     |     |     sequence (urut)
    |    |    |     |     blok
    |    |    |     desa
    |    |    kecamatan
    |    regency (dati II)
    province

Shorter codes identify the enclosing unit: 7 digits a kecamatan, 10 digits
a desa (the "district" used to filter tiles and labels), 13 digits a blok.

Example:
    >>> from cadastre_tiles.core.cadastral import CadastralCode
    >>> code = CadastralCode.parse("35.75.020.001.001-0001.0")
    >>> code.district
    '3575020001'
    >>> code.view_code
    '0001'
"""

from __future__ import annotations

import dataclasses
import enum

from cadastre_tiles.core import errors

_SEPARATORS = str.maketrans("", "", ".- ")

# (field name, width) in code order.
_SEGMENTS: tuple[tuple[str, int], ...] = (
    ("province", 2),
    ("regency", 2),
    ("kecamatan", 3),
    ("desa", 3),
    ("blok", 3),
    ("sequence", 4),
    ("kind", 1),
)

DISTRICT_LENGTH = 10
MAX_LENGTH = 18


class CodeLevel(enum.IntEnum):
    """Hierarchy level of a code, valued by its digit count."""

    KECAMATAN = 7
    DESA = 10
    BLOK = 13
    OBJECT = 18


class InvalidCadastralCode(ValueError):
    """Raised when a string is not a well-formed cadastral code."""


def _normalize(raw: str) -> str:
    return raw.strip().translate(_SEPARATORS)


@dataclasses.dataclass(frozen=True)
class CadastralCode:
    """A validated, fixed-width cadastral code.

    Use :meth:`parse` rather than the constructor; it strips separators and
    checks the length against the known hierarchy levels. Segments below
    the code's level are ``None``.
    """

    province: str
    regency: str
    kecamatan: str
    desa: str | None = None
    blok: str | None = None
    sequence: str | None = None
    kind: str | None = None

    @classmethod
    def parse(cls, raw: str) -> CadastralCode:
        """Parse a code with or without ``.``/``-`` separators.

        Raises:
            InvalidCadastralCode: If the code has non-digit characters or a
                length that matches no hierarchy level.
        """
        digits = _normalize(raw)
        if not digits.isdigit():
            raise InvalidCadastralCode(f"Cadastral code {raw!r} must be numeric")
        try:
            CodeLevel(len(digits))
        except ValueError:
            valid = ", ".join(str(level.value) for level in CodeLevel)
            raise InvalidCadastralCode(
                f"Cadastral code {raw!r} has {len(digits)} digits, "
                f"expected one of {valid}"
            ) from None

        fields: dict[str, str] = {}
        offset = 0
        for name, width in _SEGMENTS:
            if offset >= len(digits):
                break
            fields[name] = digits[offset : offset + width]
            offset += width
        return cls(**fields)

    @property
    def level(self) -> CodeLevel:
        return CodeLevel(len(str(self)))

    @property
    def district(self) -> str | None:
        """The 10-digit desa prefix, or None for kecamatan codes."""
        if self.desa is None:
            return None
        return str(self)[:DISTRICT_LENGTH]

    @property
    def view_code(self) -> str:
        """Short display label: the sequence for objects, else the last segment."""
        if self.sequence is not None:
            return self.sequence
        return self.blok or self.desa or self.kecamatan

    def startswith(self, prefix: str) -> bool:
        return str(self).startswith(prefix)

    def __str__(self) -> str:
        return "".join(
            value
            for value in (
                self.province,
                self.regency,
                self.kecamatan,
                self.desa,
                self.blok,
                self.sequence,
                self.kind,
            )
            if value is not None
        )


def parse_district_prefix(raw: str | None, min_length: int = 1) -> str | None:
    """Normalise a ``districtCode`` query parameter.

    Returns None for a missing or blank value. Any digit prefix from
    ``min_length`` digits up to a full object code is accepted, since
    filtering is a prefix match.

    Raises:
        InvalidDistrictCode: If the value is not ``min_length`` to 18 digits.
    """
    if raw is None or not raw.strip():
        return None
    digits = _normalize(raw)
    if not digits.isdigit() or not min_length <= len(digits) <= MAX_LENGTH:
        raise errors.InvalidDistrictCode(
            f"districtCode {raw!r} must be {min_length} to {MAX_LENGTH} digits"
        )
    return digits
