"""Streamlit UI for the LLM visibility dashboard."""
from __future__ import annotations

import asyncio

import streamlit as st

from visibility.batch.orchestrator import UNGROUPED
from visibility.batch.poller import notification_for, NotificationKind
from visibility.config import get_config
from visibility.dashboard import VisibilityDashboard
from visibility.demo_data import DEMO_BRAND, DEMO_DOMAIN, build_demo_api
from visibility.errors import VisibilityError
from visibility.models import PROVIDERS, FunnelStage
from visibility.view import EMPTY_VALUE, SortField, SortSpec, ViewFilters, format_rate, format_score


st.set_page_config(page_title="LLM Visibility", page_icon="🔎", layout="wide")


def get_dashboard() -> VisibilityDashboard:
    """One demo-backed dashboard per browser session."""
    if "dashboard" not in st.session_state:
        config = get_config()
        config.target_domain = config.target_domain or DEMO_DOMAIN
        config.brand_name = config.brand_name or DEMO_BRAND
        dashboard = VisibilityDashboard(build_demo_api(provider_costs=config.batch.provider_costs()), config)
        asyncio.run(dashboard.load())
        st.session_state.dashboard = dashboard
    return st.session_state.dashboard


dashboard = get_dashboard()

st.title("🔎 LLM Visibility")
st.write(
    f"How often AI assistants cite **{dashboard.config.target_domain}** or mention "
    f"**{dashboard.config.brand_name}** when answering your tracked questions."
)

with st.sidebar:
    st.header("Filters")
    concept_options = {"All concepts": None}
    for concept_id, name in sorted({(c.id, c.phrase) for c in dashboard.concepts}, key=lambda c: c[1]):
        concept_options[name] = concept_id
    concept_label = st.selectbox("Concept", list(concept_options))

    funnel = st.selectbox("Funnel stage", ["All"] + [s.value for s in FunnelStage])
    groups = sorted({q.group_id for c in dashboard.concepts for q in c.questions if q.group_id})
    group = st.selectbox("Group", ["All", UNGROUPED] + groups)
    providers = st.multiselect(
        "Providers",
        options=PROVIDERS,
        default=dashboard.config.default_providers,
        format_func=lambda p: p.label,
    )
    search = st.text_input("Search questions")

    st.header("Sort")
    sort_field = st.selectbox("Sort by", [f.value for f in SortField])
    descending = st.checkbox("Descending")

if not providers:
    st.warning("Select at least one provider.")
    st.stop()

filters = ViewFilters(
    concept_id=concept_options[concept_label],
    funnel_stage=None if funnel == "All" else funnel,
    group_id=None if group == "All" else group,
    providers=providers,
    search=search,
)
view = dashboard.view(filters=filters, sort=SortSpec(SortField(sort_field), descending))
page = st.number_input("Page", min_value=1, max_value=view.page_count, value=1)
if page != view.page:
    view = dashboard.view(page=int(page))

# Batch run controls
api = dashboard.api
run = st.session_state.get("batch_run")

col1, col2 = st.columns(2)
with col1:
    if st.button("Run all checks", type="primary", disabled=bool(run and run.is_active)):
        try:
            ticket = asyncio.run(api.start(providers, group_id=filters.group_id))
        except VisibilityError as exc:
            st.error(str(exc))
        else:
            st.session_state.batch_run = ticket.initial_run()
            st.rerun()
with col2:
    if run is not None and st.button("Refresh status"):
        st.session_state.batch_run = asyncio.run(api.status(run.run_id))
        if st.session_state.batch_run.is_terminal:
            asyncio.run(dashboard.load())
        st.rerun()

if run is not None:
    if run.is_active:
        st.progress(run.progress / 100, text=f"{run.processed_questions}/{run.total_questions} questions checked")
    elif run.is_terminal:
        notification = notification_for(run)
        show = {
            NotificationKind.SUCCESS: st.success,
            NotificationKind.PARTIAL_FAILURE: st.warning,
            NotificationKind.FAILED: st.error,
        }[notification.kind]
        show(notification.message)
        retry_col, dismiss_col = st.columns(2)
        if notification.can_retry and retry_col.button("Retry failed checks"):
            try:
                ticket = asyncio.run(api.start(run.providers, retry_failed_from_run_id=run.run_id))
            except VisibilityError as exc:
                st.error(str(exc))
            else:
                st.session_state.batch_run = ticket.initial_run()
                st.rerun()
        if dismiss_col.button("Dismiss"):
            del st.session_state.batch_run
            st.rerun()

# Rollups over the rows in view
summary = view.summary
metrics = st.columns(5)
metrics[0].metric("Questions", view.total_rows)
metrics[1].metric("Citation rate", format_rate(summary.average_visibility))
metrics[2].metric("Mention rate", format_rate(summary.mention_rate))
metrics[3].metric("Citation consistency", format_score(view.consistency.citation))
metrics[4].metric(
    "30-day trend",
    view.trend.overall.direction.value,
    delta=f"{view.trend.overall.change:+d} pts",
)

tab_questions, tab_trend, tab_sources = st.tabs(["Questions", "Trend", "Research sources"])

with tab_questions:
    records = []
    for row in view.rows:
        record = {"Question": row.text, "Concept": row.concept_name, "Funnel": row.funnel_stage.value}
        for provider in providers:
            latest = row.latest.get(provider)
            record[provider.label] = EMPTY_VALUE if latest is None else ("Cited" if latest.domain_cited else "Not cited")
            record[f"{provider.label} consistency"] = format_score(view.row_consistency[row.key][provider].citation)
        records.append(record)
    st.dataframe(records, use_container_width=True, hide_index=True)
    st.caption(f"Page {view.page} of {view.page_count}")

with tab_trend:
    series = dashboard.trend_series()
    chart = {"Period": [point.label for point in series]}
    for provider in providers:
        chart[provider.label] = [point.provider_rates[provider] for point in series]
    st.line_chart(chart, x="Period", y=[p.label for p in providers])

with tab_sources:
    report = dashboard.sources()
    st.write(
        f"{report.unique_domains} domains across {report.total_checks} checks. "
        f"Your domain appeared {report.your_domain_appearances} times."
    )
    st.dataframe(
        [
            {
                "Domain": s.domain,
                "Frequency": s.frequency,
                "Last seen": s.last_seen,
                "Concepts": ", ".join(s.concepts),
                "Yours": s.is_ours,
            }
            for s in report.sources
        ],
        use_container_width=True,
        hide_index=True,
    )
