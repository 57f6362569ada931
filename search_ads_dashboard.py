# search_ads_dashboard.py — Search terms CSV → KPI pipeline
# ----------------------------------------------------------------------------
# Core of the Search Ads Dashboard. Everything here is UI-free so the
# Streamlit app, the headless report builder and the tests share one code
# path:
#   • Record loading: Google Ads "Search terms" exports (preamble lines,
#     UTF-16 + tab, quoted thousands) → one typed DataFrame row per term.
#   • Aggregation: totals, campaign rollups, top-N terms, match types.
#     All pure functions; inputs are never mutated.
#   • Dashboard state: the rows/error/tab value the UI keeps in
#     st.session_state, replaced wholesale on every upload.
# ----------------------------------------------------------------------------

from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from pandas.errors import EmptyDataError, ParserError

logger = logging.getLogger(__name__)

# =============================================================================
# Canonical column mapping
# =============================================================================
# Header names are matched exactly (case-sensitive); the first alias present wins.
DEFAULT_MAPPING: Dict[str, List[str]] = {
    "search_term": ["Search term"],
    "campaign": ["Campaign"],
    "match_type": ["Match type", "Search term match type"],
    "impressions": ["Impr.", "Impressions"],
    "interactions": ["Interactions"],
    "cost": ["Cost (Converted currency)", "Cost"],
    "interaction_rate": ["Interaction rate"],
}

TEXT_FIELDS = ["search_term", "campaign", "match_type"]
NUMERIC_FIELDS = ["impressions", "interactions", "cost"]
PERCENT_FIELDS = ["interaction_rate"]
CANONICAL_COLUMNS = TEXT_FIELDS + NUMERIC_FIELDS + PERCENT_FIELDS

TOTAL_MARKER = "Total:"
NOT_SET = "(not set)"
PLACEHOLDERS = {"", "--"}
CURRENCY_SYMBOLS = "$€£¥"
DELIMITERS = [",", "\t", ";", "|"]
# Semicolon-separated exports come from locales that write the decimal comma.
DECIMAL_COMMA_SEPS = {";": ","}
PREAMBLE_MAX_LINES = 20
TOP_N_DEFAULT = 10

TABS: Dict[str, str] = {
    "overview": "Overview",
    "searchTerms": "Search Terms",
    "campaigns": "Campaigns",
}

CAMPAIGN_COLUMNS = ["campaign", "impressions", "interactions", "cost", "interaction_rate"]
RANKED_COLUMNS = ["term", "interactions", "impressions", "cost", "interaction_rate"]
SLICE_COLUMNS = ["name", "value"]


class ParseFailure(Exception):
    """The source could not be interpreted as delimited tabular text."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# =============================================================================
# File ingestion
# =============================================================================

def _read_bytes(source: Any) -> bytes:
    if isinstance(source, bytes):
        return source
    if isinstance(source, (str, os.PathLike)):
        try:
            with open(source, "rb") as fh:
                return fh.read()
        except OSError as e:
            raise ParseFailure(f"Could not read {os.fspath(source)}: {e}") from e

    # File-like (e.g., Streamlit UploadedFile, StringIO)
    try:
        raw = source.read()
    finally:
        if hasattr(source, "seek"):
            source.seek(0)
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return raw


def _decode(raw: bytes) -> str:
    """Decode an export; Google Ads writes UTF-16LE with a BOM for tab-separated files."""
    if raw[:2] in (b"\xff\xfe", b"\xfe\xff"):
        encodings = ["utf-16"]
    elif b"\x00" in raw[:100]:
        encodings = ["utf-16-le"]
    else:
        encodings = ["utf-8-sig", "cp1252", "latin1"]
    for enc in encodings:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    raise ParseFailure(f"Could not decode file as {' or '.join(encodings)}.")


def _split_cells(line: str, sep: str) -> List[str]:
    return [c.strip().strip('"').strip() for c in line.split(sep)]


def _locate_header(lines: List[str], key: str) -> Tuple[int, str]:
    """Return (line index, delimiter) of the header row, skipping report preamble."""
    for i, line in enumerate(lines[:PREAMBLE_MAX_LINES]):
        for sep in DELIMITERS:
            if key in _split_cells(line, sep):
                return i, sep

    first = next((i for i, line in enumerate(lines) if line.strip()), 0)
    counts = {sep: lines[first].count(sep) for sep in DELIMITERS}
    sep = max(DELIMITERS, key=lambda s: counts[s])
    return first, sep if counts[sep] else ","


def read_delimited(source: Any, header_key: str = "Search term") -> pd.DataFrame:
    """Read delimited text into an all-text DataFrame (no type inference).

    ``source`` may be a path, raw bytes, or a file-like object. Lines above the
    row holding ``header_key`` are treated as preamble and skipped.
    """
    text = _decode(_read_bytes(source))
    if not text.strip():
        raise ParseFailure("The file is empty.")

    # Split on line endings only; str.splitlines() also breaks on form feeds and U+2028.
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    start, sep = _locate_header(lines, header_key)
    body = "\n".join(lines[start:])
    skipped: List[List[str]] = []

    def _skip_bad_line(fields: List[str]) -> None:
        skipped.append(fields)
        return None

    try:
        df = pd.read_csv(
            io.StringIO(body),
            sep=sep,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
            on_bad_lines=_skip_bad_line,
        )
    except (EmptyDataError, ParserError) as e:
        raise ParseFailure(f"Failed to parse file as delimited text: {e}") from e

    data_lines = sum(1 for line in lines[start + 1:] if line.strip())
    if data_lines and df.empty:
        raise ParseFailure(
            f"Failed to parse file as delimited text: none of {data_lines} data line(s) "
            f"matched the {len(df.columns)}-column header."
        )
    if skipped:
        logger.warning("Skipped %d malformed line(s) with more fields than the header", len(skipped))

    df.columns = [str(c).strip() for c in df.columns]
    df = df.fillna("")
    df.attrs["sep"] = sep
    df.attrs["skipped_malformed"] = len(skipped)
    return df


def canonicalize_columns(df: pd.DataFrame, mapping: Dict[str, List[str]]) -> pd.DataFrame:
    """Rename recognized headers to canonical names; other columns pass through."""
    colmap: Dict[str, str] = {}
    for canon, aliases in mapping.items():
        for alias in aliases:
            if alias in df.columns and alias not in colmap:
                colmap[alias] = canon
                break
    return df.rename(columns=colmap)


def _ensure_series(df: pd.DataFrame, name: str, default: Any = "") -> pd.Series:
    """Return a column, or a constant Series of the frame's length if it is missing."""
    if name in df.columns:
        return df[name]
    return pd.Series(default, index=df.index, dtype=object if isinstance(default, str) else float)


def filter_rows(df: pd.DataFrame) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Drop rows with no search term, then rows whose search term contains ``Total:``."""
    term = _ensure_series(df, "search_term").fillna("").astype(str)
    blank = term.str.strip() == ""
    total = ~blank & term.str.contains(TOTAL_MARKER, regex=False)
    out = df.loc[~(blank | total)].reset_index(drop=True)
    report = {
        "rows_read": int(len(df)),
        "dropped_blank": int(blank.sum()),
        "dropped_total": int(total.sum()),
        "rows_kept": int(len(out)),
    }
    return out, report


def _to_number(s: pd.Series, percent: bool = False, decimal: str = ".") -> Tuple[pd.Series, int]:
    text = s.fillna("").astype(str).str.strip()
    thousands = "." if decimal == "," else ","
    cleaned = text.str.replace(thousands, "", regex=False).str.lstrip(CURRENCY_SYMBOLS)
    if decimal != ".":
        cleaned = cleaned.str.replace(decimal, ".", regex=False)
    if percent:
        cleaned = cleaned.str.rstrip("%").str.strip()
    num = pd.to_numeric(cleaned, errors="coerce").astype(float)
    num = num.where(np.isfinite(num))
    failed = int((num.isna() & ~text.isin(PLACEHOLDERS)).sum())
    return num.fillna(0.0).astype(float), failed


def coerce_fields(df: pd.DataFrame, decimal: str = ".") -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Explicit per-field typing. Unparseable numerics become 0 and are counted.

    ``decimal=","`` reads European-style numbers (``1.234,50``), as written by
    semicolon-separated exports.
    """
    out = df.copy()
    report: Dict[str, int] = {}

    out["search_term"] = _ensure_series(out, "search_term").astype(str)
    for col in ["campaign", "match_type"]:
        s = _ensure_series(out, col).fillna("").astype(str).str.strip()
        out[col] = s.mask(s == "", NOT_SET)

    for col in NUMERIC_FIELDS + PERCENT_FIELDS:
        out[col], failed = _to_number(_ensure_series(out, col), percent=col in PERCENT_FIELDS, decimal=decimal)
        report[f"coerced_{col}"] = failed
        if failed:
            logger.warning("%d %s value(s) could not be parsed and were counted as 0", failed, col)

    passthrough = [c for c in out.columns if c not in CANONICAL_COLUMNS]
    return out[CANONICAL_COLUMNS + passthrough], report


def empty_rows() -> pd.DataFrame:
    df = pd.DataFrame({c: pd.Series(dtype=object) for c in TEXT_FIELDS})
    for col in NUMERIC_FIELDS + PERCENT_FIELDS:
        df[col] = pd.Series(dtype=float)
    return df


def load_search_terms(
    source: Any, mapping: Optional[Dict[str, List[str]]] = None
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Load a Search terms export into typed rows plus an ingestion profile.

    Raises ParseFailure when the source is not delimited text; no partial
    dataset is returned in that case.
    """
    mapping = mapping or DEFAULT_MAPPING
    header_key = (mapping.get("search_term") or DEFAULT_MAPPING["search_term"])[0]
    raw = read_delimited(source, header_key=header_key)
    decimal = DECIMAL_COMMA_SEPS.get(raw.attrs.get("sep"), ".")
    df = canonicalize_columns(raw, mapping)
    df, profile = filter_rows(df)
    df, coerced = coerce_fields(df, decimal=decimal)
    profile["skipped_malformed"] = int(raw.attrs.get("skipped_malformed", 0))
    profile.update(coerced)
    logger.info(
        "Loaded %d rows (%d read, %d without search term, %d total rows dropped)",
        profile["rows_kept"], profile["rows_read"], profile["dropped_blank"], profile["dropped_total"],
    )
    return df, profile


# =============================================================================
# Aggregation
# =============================================================================

def kpi_safe_div(n: float, d: float) -> float:
    """Zero instead of NaN/inf when the denominator is zero."""
    if d == 0 or pd.isna(d):
        return 0.0
    return float(n) / float(d)


@dataclass(frozen=True)
class AggregateTotals:
    impressions: float = 0.0
    interactions: float = 0.0
    cost: float = 0.0
    avg_cpc: float = 0.0
    interaction_rate: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "impressions": self.impressions,
            "interactions": self.interactions,
            "cost": self.cost,
            "avg_cpc": self.avg_cpc,
            "interaction_rate": self.interaction_rate,
        }


def _numeric(rows: pd.DataFrame, name: str) -> pd.Series:
    return _ensure_series(rows, name, 0.0).astype(float)


def _text(rows: pd.DataFrame, name: str) -> pd.Series:
    return _ensure_series(rows, name, NOT_SET).astype(str)


def compute_totals(rows: pd.DataFrame) -> AggregateTotals:
    impressions = float(_numeric(rows, "impressions").sum())
    interactions = float(_numeric(rows, "interactions").sum())
    cost = float(_numeric(rows, "cost").sum())
    return AggregateTotals(
        impressions=impressions,
        interactions=interactions,
        cost=cost,
        avg_cpc=kpi_safe_div(cost, interactions),
        interaction_rate=kpi_safe_div(interactions, impressions) * 100,
    )


def group_by_campaign(rows: pd.DataFrame) -> pd.DataFrame:
    """One row per campaign in first-seen order, with summed metrics."""
    if rows.empty:
        return pd.DataFrame({c: pd.Series(dtype=object if c == "campaign" else float) for c in CAMPAIGN_COLUMNS})
    base = pd.DataFrame({
        "campaign": _text(rows, "campaign"),
        "impressions": _numeric(rows, "impressions"),
        "interactions": _numeric(rows, "interactions"),
        "cost": _numeric(rows, "cost"),
    })
    grp = base.groupby("campaign", sort=False, as_index=False).agg({
        "impressions": "sum", "interactions": "sum", "cost": "sum"
    })
    grp["interaction_rate"] = [
        kpi_safe_div(i, m) * 100 for i, m in zip(grp["interactions"], grp["impressions"])
    ]
    return grp[CAMPAIGN_COLUMNS]


def top_search_terms(rows: pd.DataFrame, n: int = TOP_N_DEFAULT) -> pd.DataFrame:
    """The ``n`` rows with the most interactions; ties keep their original order."""
    if n < 0:
        raise ValueError(f"n must be non-negative, got {n}")
    ranked = pd.DataFrame({
        "term": _text(rows, "search_term"),
        "interactions": _numeric(rows, "interactions"),
        "impressions": _numeric(rows, "impressions"),
        "cost": _numeric(rows, "cost"),
        "interaction_rate": _numeric(rows, "interaction_rate"),
    })
    ranked = ranked.sort_values("interactions", ascending=False, kind="mergesort").head(n)
    return ranked[RANKED_COLUMNS].reset_index(drop=True)


def match_type_distribution(rows: pd.DataFrame) -> pd.DataFrame:
    if rows.empty:
        return pd.DataFrame({"name": pd.Series(dtype=object), "value": pd.Series(dtype=float)})
    base = pd.DataFrame({
        "name": _text(rows, "match_type"),
        "value": _numeric(rows, "interactions"),
    })
    return base.groupby("name", sort=False, as_index=False)["value"].sum()[SLICE_COLUMNS]


# =============================================================================
# Dashboard state + display formatting
# =============================================================================

@dataclass(frozen=True, eq=False)
class DashboardState:
    """What the UI shows: the loaded rows, the last load error and the active tab."""

    rows: pd.DataFrame = field(default_factory=empty_rows)
    error: Optional[str] = None
    selected_tab: str = "overview"
    profile: Dict[str, int] = field(default_factory=dict)


def apply_upload(
    state: DashboardState, source: Any, mapping: Optional[Dict[str, List[str]]] = None
) -> DashboardState:
    """Load ``source`` into a new state. On failure keep the previous rows and set the error."""
    try:
        rows, profile = load_search_terms(source, mapping)
    except ParseFailure as e:
        logger.warning("Upload rejected: %s", e.message)
        return replace(state, error=e.message)
    return replace(state, rows=rows, profile=profile, error=None)


def select_tab(state: DashboardState, tab: str) -> DashboardState:
    if tab not in TABS:
        raise ValueError(f"Unknown tab {tab!r}; expected one of {list(TABS)}")
    return replace(state, selected_tab=tab)


def format_kpis(totals: AggregateTotals) -> Dict[str, str]:
    return {
        "Impressions": f"{totals.impressions:,.0f}",
        "Interactions": f"{totals.interactions:,.0f}",
        "Interaction Rate": f"{totals.interaction_rate:.2f}%",
        "Total Cost (USD)": f"${totals.cost:,.2f}",
        "Avg. CPC (USD)": f"${totals.avg_cpc:,.2f}",
    }
