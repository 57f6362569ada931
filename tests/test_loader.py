"""Record loading: reading, header mapping, row filtering and field coercion."""

import io

import pandas as pd
import pytest

from search_ads_dashboard import (
    DEFAULT_MAPPING,
    NOT_SET,
    ParseFailure,
    canonicalize_columns,
    coerce_fields,
    filter_rows,
    load_search_terms,
    read_delimited,
)

HEADER = "Search term,Campaign,Match type,Impr.,Interactions,Cost (Converted currency),Interaction rate\n"


def _csv(*lines: str) -> io.StringIO:
    return io.StringIO(HEADER + "".join(line + "\n" for line in lines))


class TestReadDelimited:
    """Tests for read_delimited."""

    def test_reads_all_cells_as_text(self):
        df = read_delimited(_csv("plan a,C1,Exact,100,10,5.00,10.00%"))

        assert list(df.columns)[:3] == ["Search term", "Campaign", "Match type"]
        assert df.loc[0, "Impr."] == "100"
        assert df.loc[0, "Cost (Converted currency)"] == "5.00"

    def test_skips_report_preamble(self):
        text = "Search terms report\nJanuary 1, 2025 - January 31, 2025\n" + HEADER + "plan a,C1,Exact,100,10,5.00,10.00%\n"
        df = read_delimited(io.StringIO(text))

        assert "Search term" in df.columns
        assert len(df) == 1

    def test_utf16_tab_delimited(self):
        raw = (
            "Search terms report\n"
            "Search term\tCampaign\tImpr.\n"
            "plan a\tC1\t100\n"
        ).encode("utf-16")
        df = read_delimited(io.BytesIO(raw))

        assert list(df.columns) == ["Search term", "Campaign", "Impr."]
        assert df.loc[0, "Campaign"] == "C1"

    def test_reads_from_path(self, tmp_path):
        path = tmp_path / "report.csv"
        path.write_text(HEADER + "plan a,C1,Exact,100,10,5.00,10.00%\n", encoding="utf-8")

        assert len(read_delimited(str(path))) == 1
        assert len(read_delimited(path)) == 1

    def test_short_rows_padded_with_empty_text(self):
        df = read_delimited(_csv("plan a,C1"))

        assert df.loc[0, "Impr."] == ""

    def test_empty_file_fails(self):
        with pytest.raises(ParseFailure) as exc:
            read_delimited(io.BytesIO(b""))
        assert exc.value.message == "The file is empty."

    def test_missing_file_fails(self, tmp_path):
        with pytest.raises(ParseFailure):
            read_delimited(str(tmp_path / "nope.csv"))

    def test_unclosed_quote_fails(self):
        src = _csv('plan a,"C1,Exact,100,10,5.00,10%', "plan b,C2,Exact,1,1,1,1%")

        with pytest.raises(ParseFailure):
            read_delimited(src)

    def test_no_line_matches_header_fails(self):
        src = io.StringIO("Search term,Campaign\na,b,c,d\ne,f,g,h\n")

        with pytest.raises(ParseFailure) as exc:
            read_delimited(src)
        assert "none of 2 data line(s)" in exc.value.message

    def test_extra_field_lines_are_counted(self):
        src = io.StringIO("Search term,Campaign\nplan a,C1\nplan b,C2,x,y\nplan c,C3\n")
        df = read_delimited(src)

        assert df["Search term"].tolist() == ["plan a", "plan c"]
        assert df.attrs["skipped_malformed"] == 1

    def test_form_feed_inside_value_stays_in_row(self):
        df = read_delimited(_csv("plan\x0ca,C1,Exact,100,10,5.00,10.00%"))

        assert len(df) == 1
        assert df.loc[0, "Search term"] == "plan\x0ca"
        assert df.loc[0, "Impr."] == "100"

    def test_crlf_line_endings(self):
        df = read_delimited(io.BytesIO(b"Search term,Impr.\r\nplan a,100\r\n"))

        assert df.loc[0, "Impr."] == "100"

    def test_source_is_rewound(self):
        src = _csv("plan a,C1,Exact,100,10,5.00,10.00%")
        read_delimited(src)

        assert src.tell() == 0


class TestCanonicalizeColumns:
    """Tests for canonicalize_columns."""

    def test_maps_exact_headers(self):
        df = pd.DataFrame(columns=["Search term", "Impr.", "Extra"])
        out = canonicalize_columns(df, DEFAULT_MAPPING)

        assert list(out.columns) == ["search_term", "impressions", "Extra"]

    def test_case_sensitive(self):
        df = pd.DataFrame(columns=["search Term"])
        out = canonicalize_columns(df, DEFAULT_MAPPING)

        assert list(out.columns) == ["search Term"]

    def test_first_alias_wins(self):
        df = pd.DataFrame(columns=["Impressions", "Impr."])
        out = canonicalize_columns(df, DEFAULT_MAPPING)

        assert list(out.columns) == ["Impressions", "impressions"]


class TestFilterRows:
    """Tests for filter_rows."""

    def test_drops_blank_and_total_rows(self):
        df = pd.DataFrame({"search_term": ["plan a", "", "   ", "Total: Account", "plan b"]})
        out, report = filter_rows(df)

        assert out["search_term"].tolist() == ["plan a", "plan b"]
        assert report == {"rows_read": 5, "dropped_blank": 2, "dropped_total": 1, "rows_kept": 2}

    def test_total_marker_is_case_sensitive(self):
        df = pd.DataFrame({"search_term": ["total: account", "Grand Total: x"]})
        out, _ = filter_rows(df)

        assert out["search_term"].tolist() == ["total: account"]

    def test_missing_search_term_column_drops_everything(self):
        out, report = filter_rows(pd.DataFrame({"campaign": ["C1", "C2"]}))

        assert out.empty
        assert report["dropped_blank"] == 2

    def test_does_not_mutate_input(self):
        df = pd.DataFrame({"search_term": ["plan a", "Total: 1"]})
        filter_rows(df)

        assert len(df) == 2


class TestCoerceFields:
    """Tests for coerce_fields."""

    def test_decimal_comma(self):
        df = pd.DataFrame({"search_term": ["a"], "cost": ["1.234,50"], "interaction_rate": ["2,5%"]})
        out, report = coerce_fields(df, decimal=",")

        assert out.loc[0, "cost"] == 1234.5
        assert out.loc[0, "interaction_rate"] == 2.5
        assert report["coerced_cost"] == 0

    def test_numeric_parsing(self):
        df = pd.DataFrame({
            "search_term": ["a", "b", "c"],
            "impressions": ["1,234", "--", "oops"],
            "interactions": ["10", "", "3"],
            "cost": ["$5.50", "0", "1,000.25"],
            "interaction_rate": ["12.5%", "--", "bad%"],
        })
        out, report = coerce_fields(df)

        assert out["impressions"].tolist() == [1234.0, 0.0, 0.0]
        assert out["interactions"].tolist() == [10.0, 0.0, 3.0]
        assert out["cost"].tolist() == [5.5, 0.0, 1000.25]
        assert out["interaction_rate"].tolist() == [12.5, 0.0, 0.0]
        assert report["coerced_impressions"] == 1
        assert report["coerced_interaction_rate"] == 1
        assert report["coerced_cost"] == 0

    def test_missing_columns_default(self):
        out, _ = coerce_fields(pd.DataFrame({"search_term": ["a"]}))

        assert out.loc[0, "campaign"] == NOT_SET
        assert out.loc[0, "match_type"] == NOT_SET
        assert out.loc[0, "cost"] == 0.0

    def test_non_finite_values_become_zero(self):
        out, report = coerce_fields(pd.DataFrame({"search_term": ["a"], "cost": ["inf"]}))

        assert out.loc[0, "cost"] == 0.0
        assert report["coerced_cost"] == 1

    def test_passthrough_columns_kept_after_canonical(self):
        out, _ = coerce_fields(pd.DataFrame({"Ad group": ["AG1"], "search_term": ["a"]}))

        assert list(out.columns)[-1] == "Ad group"
        assert out.loc[0, "Ad group"] == "AG1"


class TestLoadSearchTerms:
    """Tests for load_search_terms."""

    def test_end_to_end(self):
        rows, profile = load_search_terms(_csv(
            "plan a,C1,Exact,100,10,5.00,10.00%",
            "Total: 1,C1,Exact,100,10,5.00,10.00%",
            ",C1,Exact,50,5,1.00,10.00%",
        ))

        assert rows["search_term"].tolist() == ["plan a"]
        assert rows.loc[0, "impressions"] == 100.0
        assert rows.loc[0, "interaction_rate"] == 10.0
        assert profile["rows_read"] == 3
        assert profile["rows_kept"] == 1

    def test_header_only(self):
        rows, profile = load_search_terms(io.StringIO(HEADER))

        assert rows.empty
        assert profile["rows_kept"] == 0

    def test_semicolon_export_uses_decimal_comma(self):
        text = (
            "Search term;Campaign;Match type;Impr.;Interactions;Cost (Converted currency);Interaction rate\n"
            "plan a;C1;Exact;1.200;10;5,50;10,00%\n"
        )
        rows, profile = load_search_terms(io.StringIO(text))

        assert rows.loc[0, "impressions"] == 1200.0
        assert rows.loc[0, "cost"] == 5.5
        assert rows.loc[0, "interaction_rate"] == 10.0
        assert profile["coerced_cost"] == 0

    def test_profile_reports_skipped_lines(self):
        rows, profile = load_search_terms(_csv(
            "plan a,C1,Exact,100,10,5.00,10.00%",
            "plan b,C1,Exact,100,10,5.00,10.00%,extra,extra",
        ))

        assert rows["search_term"].tolist() == ["plan a"]
        assert profile["skipped_malformed"] == 1

    def test_custom_mapping(self):
        mapping = dict(DEFAULT_MAPPING, search_term=["Query"], impressions=["Views"])
        rows, _ = load_search_terms(io.StringIO("Query,Views\nplan a,7\n"), mapping)

        assert rows.loc[0, "search_term"] == "plan a"
        assert rows.loc[0, "impressions"] == 7.0
