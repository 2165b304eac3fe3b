from __future__ import annotations

import asyncio
from pathlib import Path
import sys

# Ensure project root is on sys.path when running via Streamlit
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import streamlit as st

from marketsync.config.settings import settings as cfg
from marketsync.core.engine import RefreshResult
from marketsync.core.store import StateStore
from marketsync.core.valuator import is_open, position_value, resolve_current_price
from marketsync.main import build_engine, build_news_store, build_persistence, market_news
from marketsync.utils.kv_cache import TTLCache


st.set_page_config(page_title="Portfolio Sync", layout="wide")
st.title("Portfolio Overview")


@st.cache_resource
def get_store() -> StateStore:
    return StateStore.load(build_persistence(cfg))


@st.cache_resource
def get_news_store() -> TTLCache:
    return build_news_store(cfg)


def refresh(store: StateStore) -> RefreshResult:
    async def _run() -> RefreshResult:
        engine = build_engine(cfg, store)
        try:
            return await engine.refresh_now()
        finally:
            await engine.aclose()

    return asyncio.run(_run())


store = get_store()

col_btn, col_status = st.columns([1, 4])
if col_btn.button("Refresh Prices") or store.get("portfolio") is None:
    with st.spinner("Refreshing..."):
        result = refresh(store)
    if result.error:
        col_status.error(result.error)

snapshot = store.get("portfolio")
if snapshot is not None:
    c1, c2, c3 = st.columns(3)
    c1.metric("USDC Balance", f"${snapshot.balance:,.2f}")
    c2.metric("Open Positions Value", f"${snapshot.positions_value:,.2f}", f"{snapshot.open_positions} open")
    c3.metric("Total Portfolio Value", f"${snapshot.total_value:,.2f}")

prices = store.get("prices", {})
positions = [p for p in store.get("positions", []) if is_open(p, prices)]
if positions:
    rows = [
        {
            "Market": p.market_name or p.slug or p.market_id,
            "Outcome": p.outcome.value,
            "Volume": p.volume,
            "Entry": p.entry_price,
            "Current": resolve_current_price(p, prices),
            "Value": round(position_value(p, prices), 2),
        }
        for p in sorted(positions, key=lambda p: p.market_name)
    ]
    st.dataframe(rows, width='stretch', hide_index=True)
else:
    st.info("No open positions.")

market_ids = sorted({p.market_id for p in positions if p.market_id})
if market_ids:
    st.subheader("Market News")
    selected = st.selectbox("Market", market_ids)
    articles = asyncio.run(market_news(selected, get_news_store(), cfg))
    for article in articles:
        st.markdown(f"- {article.get('title', '(untitled)')}")
    if not articles:
        st.caption("No news for this market.")
