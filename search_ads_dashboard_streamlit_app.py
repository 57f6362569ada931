# search_ads_dashboard_streamlit_app.py — Search Ads Dashboard (Streamlit + Headless Fallback)
# ----------------------------------------------------------------------------
# Upload a Google Ads "Search terms" report export and get:
#   • KPI tiles: impressions, interactions, interaction rate, cost, avg. CPC
#   • Top search terms by interactions and the match type split
#   • Per-campaign rollups with CSV download
#
# Parsing and aggregation live in search_ads_dashboard.py; this file only
# draws them.
#
# Quick start (Streamlit, on your machine):
#   pip install -e .
#   streamlit run search_ads_dashboard_streamlit_app.py
#
# Quick start (Headless, no Streamlit):
#   python search_ads_dashboard_streamlit_app.py
#   → outputs are written to $SEARCH_ADS_OUTDIR (default ./search_ads_outputs)
# ----------------------------------------------------------------------------

from __future__ import annotations
import os
import io
import sys
import json
import glob
import logging
from typing import Dict, List, Optional

import pandas as pd

from search_ads_dashboard import (
    DEFAULT_MAPPING,
    TABS,
    TOP_N_DEFAULT,
    DashboardState,
    ParseFailure,
    apply_upload,
    compute_totals,
    empty_rows,
    format_kpis,
    group_by_campaign,
    load_search_terms,
    match_type_distribution,
    select_tab,
    top_search_terms,
)

# Optional libs
try:
    import plotly.express as px
    PLOTLY_AVAILABLE = True
except Exception:
    PLOTLY_AVAILABLE = False

try:
    import kaleido  # noqa: F401
    KALEIDO_AVAILABLE = True
except Exception:
    KALEIDO_AVAILABLE = False

# Detect Streamlit safely
try:
    import streamlit as st  # type: ignore
    STREAMLIT_AVAILABLE = True
except Exception:
    STREAMLIT_AVAILABLE = False

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================
OUTDIR = os.environ.get("SEARCH_ADS_OUTDIR", "search_ads_outputs")
INPUT_GLOB = os.environ.get("SEARCH_ADS_INPUT_GLOB", "*.csv")

COLORS = ["#0088FE", "#00C49F", "#FFBB28", "#FF8042", "#8884d8"]
BAR_COLOR = "#8884d8"


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# =============================================================================
# Charts (shared by Streamlit & headless)
# =============================================================================

def top_terms_figure(top: pd.DataFrame):
    fig = px.bar(top, x="term", y="interactions", color_discrete_sequence=[BAR_COLOR], title="Top Search Terms")
    fig.update_layout(height=380, margin=dict(l=8, r=8, b=8, t=40))
    return fig


def match_type_figure(slices: pd.DataFrame):
    fig = px.pie(slices, names="name", values="value", color_discrete_sequence=COLORS, title="Match Type Distribution")
    fig.update_layout(height=380, margin=dict(l=8, r=8, b=8, t=40))
    return fig


def campaign_figure(groups: pd.DataFrame):
    fig = px.bar(groups, x="campaign", y=["interactions", "cost"], barmode="group",
                 color_discrete_sequence=COLORS, title="Campaign Performance")
    fig.update_layout(height=420, margin=dict(l=8, r=8, b=120, t=40))
    return fig


# =============================================================================
# Streamlit UI (only if available)
# =============================================================================

def upload_token(upload) -> str:
    """Identity of one file selection; re-selecting a file, even an identical one, gets a new id."""
    return upload.file_id


def run_streamlit_app():
    st.set_page_config(page_title="Search Ads Dashboard", page_icon="🔎", layout="wide")

    CSS = """
    <style>
    .block-container {padding-top: 2rem; padding-bottom: 3rem;}
    [data-testid="stMetricValue"] { font-weight: 800; }
    .small { color:#6b7a8c; font-size: 0.9rem; }
    </style>
    """
    st.markdown(CSS, unsafe_allow_html=True)

    if "mapping" not in st.session_state:
        st.session_state.mapping = DEFAULT_MAPPING.copy()
    if "dashboard" not in st.session_state:
        st.session_state.dashboard = DashboardState()

    with st.sidebar:
        st.title("📥 Upload CSV")
        upload = st.file_uploader("Drop your Search terms report export", type=["csv", "tsv", "txt"])
        st.markdown("---")
        st.subheader("🔧 Settings")
        top_n = st.slider("Top search terms", min_value=5, max_value=50, value=TOP_N_DEFAULT, step=5)

    # A new selection supersedes the previous one; reruns with the same file do not re-parse.
    if upload is not None:
        token = upload_token(upload)
        if st.session_state.get("upload_token") != token:
            st.session_state.upload_token = token
            with st.spinner("Processing file…"):
                st.session_state.dashboard = apply_upload(
                    st.session_state.dashboard, upload, st.session_state.mapping
                )

    state: DashboardState = st.session_state.dashboard

    st.header("Search Ads Dashboard")
    if state.error:
        st.error(state.error)

    if state.rows.empty:
        st.info("Upload a Search terms report (CSV) in the sidebar to begin.")
    else:
        with st.expander("Ingestion Summary"):
            st.dataframe(pd.DataFrame([state.profile]), use_container_width=True)

        tab = st.radio("View", list(TABS), format_func=TABS.get, horizontal=True,
                       index=list(TABS).index(state.selected_tab), label_visibility="collapsed")
        if tab != state.selected_tab:
            state = select_tab(state, tab)
            st.session_state.dashboard = state

        if state.selected_tab == "overview":
            render_overview(state.rows, top_n)
        elif state.selected_tab == "searchTerms":
            render_search_terms(state.rows, top_n)
        else:
            render_campaigns(state.rows)

    with st.expander("⚙️ Column Mapping (advanced)"):
        st.write("Map alternate export headers to canonical names (exact, case-sensitive).")
        mapping_text = st.text_area("Mapping JSON", value=json.dumps(st.session_state.mapping, indent=2), height=220)
        if st.button("Save Mapping"):
            try:
                st.session_state.mapping = json.loads(mapping_text)
                st.session_state.pop("upload_token", None)
                st.success("Mapping updated. It applies to the current upload on the next rerun.")
            except json.JSONDecodeError as e:
                st.error(f"Invalid JSON: {e}")

    st.markdown("""
    <div class="small">Source: Search terms report CSV (uploaded). PNG export requires <code>kaleido</code>.<br>
    © 2025 — Search Ads Dashboard</div>
    """, unsafe_allow_html=True)


def render_overview(rows: pd.DataFrame, top_n: int) -> None:
    kpis = format_kpis(compute_totals(rows))
    cols = st.columns(len(kpis))
    for col, (label, value) in zip(cols, kpis.items()):
        col.metric(label, value)

    if not PLOTLY_AVAILABLE:
        return
    left, right = st.columns(2)
    with left:
        fig = top_terms_figure(top_search_terms(rows, top_n))
        st.plotly_chart(fig, use_container_width=True)
        if KALEIDO_AVAILABLE:
            st.download_button("Download chart (PNG)", data=fig.to_image(format="png"), file_name="top_search_terms.png", mime="image/png")
    with right:
        fig2 = match_type_figure(match_type_distribution(rows))
        st.plotly_chart(fig2, use_container_width=True)
        if KALEIDO_AVAILABLE:
            st.download_button("Download chart (PNG)", data=fig2.to_image(format="png"), file_name="match_types.png", mime="image/png")


def render_search_terms(rows: pd.DataFrame, top_n: int) -> None:
    st.subheader(f"Top {top_n} Search Terms")
    top = top_search_terms(rows, top_n)
    st.dataframe(top, use_container_width=True)
    st.download_button("Download table (CSV)", data=top.to_csv(index=False).encode("utf-8"), file_name="top_search_terms.csv", mime="text/csv")


def render_campaigns(rows: pd.DataFrame) -> None:
    st.subheader("Campaigns")
    groups = group_by_campaign(rows)
    if PLOTLY_AVAILABLE:
        st.plotly_chart(campaign_figure(groups), use_container_width=True)
    st.dataframe(groups.sort_values("impressions", ascending=False), use_container_width=True)
    st.download_button("Download table (CSV)", data=groups.to_csv(index=False).encode("utf-8"), file_name="campaign_summary.csv", mime="text/csv")


# =============================================================================
# Headless report builder (no Streamlit required)
# =============================================================================

def ensure_outdir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def write_df(path: str, df: pd.DataFrame) -> None:
    df.to_csv(path, index=False)


def build_headless_report(
    csv_paths: Optional[List[str]] = None,
    mapping: Optional[Dict[str, List[str]]] = None,
    outdir: Optional[str] = None,
) -> Dict[str, str]:
    mapping = mapping or DEFAULT_MAPPING
    outdir = ensure_outdir(outdir or OUTDIR)

    if not csv_paths:
        csv_paths = sorted(glob.glob(INPUT_GLOB))

    frames, profiles = [], []
    for p in csv_paths:
        try:
            rows, prof = load_search_terms(p, mapping)
        except ParseFailure as e:
            logger.error("Skipping %s: %s", p, e.message)
            profiles.append({"name": os.path.basename(p), "error": e.message})
            continue
        profiles.append({"name": os.path.basename(p), **prof})
        frames.append(rows)

    rows = pd.concat(frames, ignore_index=True, sort=False) if frames else empty_rows()
    write_df(os.path.join(outdir, "ingestion_profile.csv"), pd.DataFrame(profiles))

    top = top_search_terms(rows)
    groups = group_by_campaign(rows)
    slices = match_type_distribution(rows)
    write_df(os.path.join(outdir, "kpi_overview.csv"), pd.DataFrame([compute_totals(rows).to_dict()]))
    write_df(os.path.join(outdir, "campaign_summary.csv"), groups)
    write_df(os.path.join(outdir, "top_search_terms.csv"), top)
    write_df(os.path.join(outdir, "match_type_distribution.csv"), slices)

    chart_paths: Dict[str, str] = {}
    if PLOTLY_AVAILABLE and not rows.empty:
        for key, fig in [
            ("top_search_terms_html", top_terms_figure(top)),
            ("match_types_html", match_type_figure(slices)),
            ("campaigns_html", campaign_figure(groups)),
        ]:
            path = os.path.join(outdir, key.replace("_html", ".html"))
            fig.write_html(path, include_plotlyjs="cdn")
            chart_paths[key] = path

    index = {"outdir": outdir, **chart_paths}
    write_df(os.path.join(outdir, "artifact_index.csv"), pd.DataFrame([index]))
    return index


# =============================================================================
# Self-checks (run from the entrypoint)
# =============================================================================

def run_tests() -> None:
    # 1) End-to-end: total rows are dropped and KPIs derived from the rest
    sample = (
        "Search term,Campaign,Match type,Impr.,Interactions,Cost (Converted currency)\n"
        "plan a,C1,Exact,100,10,5.00\n"
        "Total: 1,C1,Exact,100,10,5.00\n"
    )
    rows, profile = load_search_terms(io.StringIO(sample))
    totals = compute_totals(rows)
    assert profile["dropped_total"] == 1 and len(rows) == 1
    assert totals.impressions == 100 and totals.interactions == 10
    assert round(totals.cost, 2) == 5.00
    assert round(totals.avg_cpc, 2) == 0.50
    assert round(totals.interaction_rate, 2) == 10.00

    # 2) Empty dataset renders zeros, never NaN
    kpis = format_kpis(compute_totals(empty_rows()))
    assert kpis["Impressions"] == "0"
    assert kpis["Interaction Rate"] == "0.00%"
    assert kpis["Avg. CPC (USD)"] == "$0.00"

    # 3) Google Ads preamble + UTF-16 + tab-delimited should parse
    utf16_content = (
        "Search terms report\n"
        "All time\n"
        "Search term\tMatch type\tCampaign\tImpr.\tInteractions\n"
        "plan b\tPhrase\tC2\t1,200\t12\n"
    ).encode("utf-16")
    rows16, _ = load_search_terms(io.BytesIO(utf16_content))
    assert rows16.loc[0, "impressions"] == 1200.0 and rows16.loc[0, "campaign"] == "C2"

    # 4) Failed upload keeps the previous rows and surfaces the error
    state = apply_upload(DashboardState(), io.StringIO(sample))
    failed = apply_upload(state, io.BytesIO(b""))
    assert failed.error and len(failed.rows) == 1


# =============================================================================
# Entrypoint
# =============================================================================
if __name__ == "__main__":
    setup_logging()
    try:
        run_tests()
        print("[tests] ✅ All self-checks passed.")
    except AssertionError as e:
        print("[tests] ❌ A self-check failed:", e)

    if STREAMLIT_AVAILABLE:
        run_streamlit_app()
    else:
        print("[info] Streamlit not available — running headless report builder.")
        artifacts = build_headless_report()
        print("[done] Artifacts written to:", artifacts.get("outdir"))
        for k, v in artifacts.items():
            if k != "outdir":
                print(f"  - {k}: {v}")
