"""CSV / Excel contribution listings → ``AportesListing``.

Columns are mapped by header name, never by position.  Any row that cannot
resolve a required field rejects the whole file: a partial listing would
silently under-report contributions.
"""

from __future__ import annotations

import csv
import io
import logging
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence, Union

from openpyxl import load_workbook

from app.schemas.payroll import AportesListing, ListingTotals, PersonEntry
from app.services.amounts import LocaleHint, coerce_locale, parse_amount, sum_amounts
from app.services.errors import ParseError, ParseErrorKind
from app.services.identifiers import normalize_person_name, normalize_tax_id

logger = logging.getLogger(__name__)

FORMAT_CSV = "csv"
FORMAT_XLSX = "xlsx"

CANDIDATE_DELIMITERS = (",", ";", "\t")

_UTF8_BOM = b"\xef\xbb\xbf"
_ZIP_MAGIC = b"PK\x03\x04"
_OLE_MAGIC = b"\xd0\xcf\x11\xe0"

# canonical column -> accepted header spellings (already folded), most specific first
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "cuil_cuit": ("cuil_cuit", "cuit_cuil", "cuil", "cuit", "cuil_o_cuit"),
    "nombre": ("nombre", "apellido_y_nombre", "nombre_y_apellido", "apellido_nombre", "agente"),
    "tot_remunerativo": ("tot_remunerativo", "total_remunerativo", "remunerativo", "tot_rem"),
    "cant_legajos": ("cant_legajos", "cantidad_legajos", "cantidad_de_legajos", "legajos"),
    "monto_concepto": ("monto_concepto", "importe_concepto", "monto_aporte", "aporte"),
}
REQUIRED_COLUMNS = tuple(HEADER_ALIASES)

# alias -> (canonical column, rank); a lower rank is a more specific spelling
_ALIAS_LOOKUP = {
    alias: (canonical, rank) for canonical, aliases in HEADER_ALIASES.items() for rank, alias in enumerate(aliases)
}

_COLUMN_LABELS = {
    "cuil_cuit": "CUIL/CUIT",
    "nombre": "nombre",
    "tot_remunerativo": "total remunerativo",
    "cant_legajos": "cantidad de legajos",
    "monto_concepto": "monto concepto",
}


@dataclass
class ParsedListing:
    listing: AportesListing
    source_format: str
    encoding: Optional[str] = None
    delimiter: Optional[str] = None
    columns: dict[str, int] = field(default_factory=dict)


def fold_header(value: Any) -> str:
    """Case/accent-insensitive header key: ``"Cant. Legajos"`` → ``"cant_legajos"``."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    out = []
    for ch in text:
        out.append(ch if ch.isalnum() else "_")
    return "_".join(part for part in "".join(out).split("_") if part)


def map_columns(header: Sequence[Any]) -> dict[str, int]:
    """Canonical column -> header index.  The most specific spelling wins, then the leftmost column."""
    best: dict[str, tuple[int, int]] = {}
    for index, cell in enumerate(header):
        match = _ALIAS_LOOKUP.get(fold_header(cell))
        if match is None:
            continue
        canonical, rank = match
        if canonical not in best or rank < best[canonical][0]:
            best[canonical] = (rank, index)
    return {canonical: index for canonical, (_rank, index) in best.items()}


def detect_format(data: bytes, declared_format: Optional[str] = None) -> str:
    declared = (declared_format or "").strip().lower().lstrip(".")
    if declared in {"xls", "ods", "pdf"}:
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, f"Formato no soportado: {declared}")
    if declared in {"xlsx", "xlsm"}:
        return FORMAT_XLSX
    if declared in {"csv", "txt", "tsv"}:
        return FORMAT_CSV
    if declared:
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, f"Formato no soportado: {declared}")

    if data.startswith(_ZIP_MAGIC):
        return FORMAT_XLSX
    if data.startswith(_OLE_MAGIC):
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, "Formato Excel 97-2003 (.xls) no soportado")
    if data.startswith(b"%PDF"):
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, "Un PDF no es un archivo tabular")
    if b"\x00" in data[:4096]:
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, "Archivo binario no reconocido")
    return FORMAT_CSV


def decode_text(data: bytes) -> tuple[str, str]:
    """Return ``(text, encoding)``; UTF-8 first, Latin-1 as fallback."""
    if data.startswith(_UTF8_BOM):
        data = data[len(_UTF8_BOM) :]
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1"), "latin-1"
    if "\ufffd" in text:
        return data.decode("latin-1"), "latin-1"
    return text, "utf-8"


def detect_delimiter(header_line: str) -> str:
    best, best_score = None, 0
    for delimiter in CANDIDATE_DELIMITERS:
        cells = next(csv.reader([header_line], delimiter=delimiter), [])
        score = len(map_columns(cells))
        if score > best_score:
            best, best_score = delimiter, score
    if best is None:
        raise ParseError(
            ParseErrorKind.MISSING_COLUMNS,
            "No se reconoce el encabezado. Formato esperado: "
            "cuil_cuit;nombre;tot_remunerativo;cant_legajos;monto_concepto",
            row=1,
        )
    return best


def _is_blank_row(row: Sequence[Any]) -> bool:
    return all(cell is None or str(cell).strip() == "" for cell in row)


def _require_columns(mapping: dict[str, int]) -> None:
    missing = [_COLUMN_LABELS[name] for name in REQUIRED_COLUMNS if name not in mapping]
    if missing:
        raise ParseError(
            ParseErrorKind.MISSING_COLUMNS,
            "Faltan columnas obligatorias: " + ", ".join(missing),
            row=1,
        )


def _cell(row: Sequence[Any], index: int) -> Any:
    if index >= len(row):
        return None
    value = row[index]
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _missing(column: str, row_number: int) -> ParseError:
    return ParseError(
        ParseErrorKind.MISSING_COLUMNS,
        f"Fila {row_number}: falta {_COLUMN_LABELS[column]}",
        row=row_number,
    )


def _parse_count(value: Any, row_number: int) -> int:
    if isinstance(value, bool):
        raise _missing("cant_legajos", row_number)
    if isinstance(value, int):
        count = value
    elif isinstance(value, float) and value.is_integer():
        count = int(value)
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise ParseError(
                ParseErrorKind.MISSING_COLUMNS,
                f"Fila {row_number}: cantidad de legajos inválida {text!r}",
                row=row_number,
            )
        count = int(text)
    if count < 0:
        raise ParseError(
            ParseErrorKind.MISSING_COLUMNS,
            f"Fila {row_number}: cantidad de legajos negativa",
            row=row_number,
        )
    return count


def _parse_row_amount(value: Any, column: str, row_number: int, locale_hint: LocaleHint) -> Decimal:
    try:
        return parse_amount(value, locale_hint)
    except ParseError as exc:
        raise ParseError(
            ParseErrorKind.INVALID_AMOUNT,
            f"Fila {row_number}, {_COLUMN_LABELS[column]}: {exc.message}",
            row=row_number,
        ) from exc


def _tax_id_cell(value: Any) -> Optional[str]:
    # Spreadsheets hand back CUITs as numbers.
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return normalize_tax_id(value)


def _build_entry(
    row: Sequence[Any],
    mapping: dict[str, int],
    row_number: int,
    locale_hint: LocaleHint,
) -> PersonEntry:
    raw = {name: _cell(row, index) for name, index in mapping.items()}
    for name in REQUIRED_COLUMNS:
        if raw.get(name) is None:
            raise _missing(name, row_number)

    tax_id = _tax_id_cell(raw["cuil_cuit"])
    if tax_id is None:
        raise ParseError(
            ParseErrorKind.MISSING_COLUMNS,
            f"Fila {row_number}: CUIL/CUIT ilegible {raw['cuil_cuit']!r}",
            row=row_number,
        )
    name = normalize_person_name(str(raw["nombre"]))
    if name is None:
        raise _missing("nombre", row_number)

    return PersonEntry(
        name=name,
        tax_id=tax_id,
        total_remunerative=_parse_row_amount(raw["tot_remunerativo"], "tot_remunerativo", row_number, locale_hint),
        legajo_count=_parse_count(raw["cant_legajos"], row_number),
        concept_amount=_parse_row_amount(raw["monto_concepto"], "monto_concepto", row_number, locale_hint),
    )


def _build_listing(entries: list[PersonEntry]) -> AportesListing:
    if not entries:
        raise ParseError(ParseErrorKind.EMPTY_DATA, "El archivo no contiene filas de datos")
    return AportesListing(
        entries=entries,
        totals=ListingTotals(
            person_count=len(entries),
            total_amount=sum_amounts(entry.concept_amount for entry in entries),
        ),
    )


def _parse_csv(data: bytes, locale_hint: LocaleHint) -> ParsedListing:
    text, encoding = decode_text(data)
    lines = text.splitlines()
    header_line = next((line for line in lines if line.strip()), None)
    if header_line is None:
        raise ParseError(ParseErrorKind.EMPTY_DATA, "El archivo está vacío")

    delimiter = detect_delimiter(header_line)
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)

    mapping: dict[str, int] = {}
    entries: list[PersonEntry] = []
    for row in reader:
        if _is_blank_row(row):
            continue
        if not mapping:
            mapping = map_columns(row)
            _require_columns(mapping)
            continue
        entries.append(_build_entry(row, mapping, reader.line_num, locale_hint))

    return ParsedListing(
        listing=_build_listing(entries),
        source_format=FORMAT_CSV,
        encoding=encoding,
        delimiter=delimiter,
        columns=mapping,
    )


def _parse_xlsx(data: bytes, locale_hint: LocaleHint) -> ParsedListing:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise ParseError(ParseErrorKind.UNSUPPORTED_FORMAT, "No se pudo abrir la planilla Excel") from exc

    try:
        if not workbook.worksheets:
            raise ParseError(ParseErrorKind.EMPTY_DATA, "La planilla no tiene hojas")
        sheet = workbook.worksheets[0]

        mapping: dict[str, int] = {}
        entries: list[PersonEntry] = []
        for row_number, row in enumerate(sheet.iter_rows(values_only=True), start=1):
            if _is_blank_row(row):
                continue
            if not mapping:
                mapping = map_columns(row)
                _require_columns(mapping)
                continue
            entries.append(_build_entry(row, mapping, row_number, locale_hint))
    finally:
        workbook.close()

    if not mapping:
        raise ParseError(ParseErrorKind.EMPTY_DATA, "La planilla está vacía")
    return ParsedListing(listing=_build_listing(entries), source_format=FORMAT_XLSX, columns=mapping)


def parse_listing(
    data: bytes,
    declared_format: Optional[str] = None,
    *,
    locale_hint: Union[str, LocaleHint] = LocaleHint.AR,
) -> ParsedListing:
    """Parse a contribution listing; raises :class:`ParseError` on any rejection."""
    if not data or not data.strip():
        raise ParseError(ParseErrorKind.EMPTY_DATA, "El archivo está vacío")
    hint = coerce_locale(locale_hint) or LocaleHint.AR

    source_format = detect_format(data, declared_format)
    if source_format == FORMAT_XLSX:
        parsed = _parse_xlsx(data, hint)
    else:
        parsed = _parse_csv(data, hint)

    logger.info(
        "Tabular listing parsed: format=%s rows=%d encoding=%s delimiter=%r",
        parsed.source_format,
        len(parsed.listing.entries),
        parsed.encoding,
        parsed.delimiter,
    )
    return parsed
