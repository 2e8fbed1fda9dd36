import json
import time
import numpy as np
import streamlit as st
import pandas as pd

from amm.config import ScenarioConfig
from amm.engine import SimulationEngine
from amm.errors import AMMError

st.set_page_config(page_title="Constant-Product AMM Simulator", layout="wide")


def build_engine(fresh_config: bool = False) -> SimulationEngine:
    if fresh_config or "cfg" not in st.session_state:
        st.session_state.cfg = ScenarioConfig()
    engine = SimulationEngine(cfg=st.session_state.cfg, seed=int(st.session_state.get("seed", 1)))
    st.session_state.engine = engine
    st.session_state.last_run = None
    return engine


engine = st.session_state.engine if "engine" in st.session_state else build_engine()

st.title("Constant-Product AMM Simulator")
st.caption(f"Time model: 1 tick = {engine.cfg.seconds_per_tick} seconds of chain time.")

def _fmt(value: float) -> str:
    return f"{float(value):,.2f}"

def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for start in range(0, len(kpis), columns):
        for col, (label, value) in zip(st.columns(columns), kpis[start:start + columns]):
            col.metric(label, value)

def _format_table_numbers(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    for name in out.select_dtypes(include=["number"]).columns:
        out[name] = out[name].map(lambda v: f"{v:,.4f}" if pd.notnull(v) else "")
    return out

def _ensure_metrics_snapshot(engine: SimulationEngine) -> None:
    stale_network = engine.metrics.last_tick("network") != engine.tick
    stale_pool = engine.metrics.last_tick("pool") != engine.tick
    if stale_network or stale_pool:
        engine.snapshot_metrics(force_network=stale_network, force_pool=stale_pool)

def _format_event_meta(meta) -> str:
    if not meta:
        return ""
    try:
        return json.dumps(meta, sort_keys=True, default=str)
    except TypeError:
        return str(meta)

def _run_ticks(engine: SimulationEngine, total: int, bar) -> float:
    started = time.perf_counter()
    for done in range(1, total + 1):
        engine.step(1)
        bar.progress(done / total, text=f"Tick {engine.tick} ({done}/{total})")
    _ensure_metrics_snapshot(engine)
    return time.perf_counter() - started


with st.sidebar:
    st.header("Market Controls")

    st.number_input("Random seed", min_value=1, max_value=100000, value=1, key="seed")
    if st.button("Rebuild market"):
        engine = build_engine()
    st.caption("Rebuild reseeds every pool at tick 0 with the settings below.")

    cfg = st.session_state.get("cfg", engine.cfg)
    cfg.swaps_per_tick = int(st.slider("Swaps per tick", min_value=0, max_value=100, value=int(cfg.swaps_per_tick)))
    cfg.swap_size_mean_usd = float(st.number_input("Mean swap size (USD)", min_value=1.0,
                                                   value=float(cfg.swap_size_mean_usd), step=100.0))
    cfg.exact_output_share = float(st.slider("Exact-output share", 0.0, 1.0, float(cfg.exact_output_share)))
    cfg.slippage_tolerance = float(st.slider("Slippage tolerance", 0.0, 0.05, float(cfg.slippage_tolerance),
                                             step=0.001, format="%.3f"))
    cfg.flash_swap_prob = float(st.slider("Flash swap probability", 0.0, 1.0, float(cfg.flash_swap_prob)))
    cfg.flash_repay_shortfall_prob = float(st.slider("Flash under-repay probability", 0.0, 1.0,
                                                     float(cfg.flash_repay_shortfall_prob)))
    cfg.max_hops = int(st.number_input("Max hops", min_value=1, max_value=5, value=int(cfg.max_hops)))
    engine.router.max_hops = cfg.max_hops

    n_ticks = st.slider("Ticks per run", min_value=1, max_value=500, value=25)
    left, right = st.columns(2)
    clicked = {"one": left.button("+1 tick"), "many": right.button(f"+{n_ticks} ticks")}
    last_run = st.session_state.get("last_run")
    bar = st.progress(1.0 if last_run else 0.0, text=last_run or "Idle")
    if clicked["one"] or clicked["many"]:
        total = 1 if clicked["one"] else int(n_ticks)
        seconds = _run_ticks(engine, total, bar)
        st.session_state.last_run = f"Ran {total} tick(s) in {seconds:0.1f}s, now at tick {engine.tick}"
        bar.progress(1.0, text=st.session_state.last_run)


net_df = engine.metrics.network_df()
pool_df = engine.metrics.pool_df()

tab_market, tab_pools, tab_quote, tab_events = st.tabs(["Market", "Pools", "Quote", "Event Log"])

with tab_market:
    st.subheader("Market KPIs")
    if net_df.empty:
        st.info("No metrics yet. Run ticks.")
    else:
        latest = net_df.iloc[-1].to_dict()
        kpis = [
            ("Tick", str(engine.tick)),
            ("Pools", _fmt(latest.get("num_pools", len(engine.pools)))),
            ("TVL (USD)", _fmt(latest.get("tvl_usd", 0.0))),
            ("Swaps this tick", _fmt(latest.get("swaps_executed_tick", 0))),
            ("Failed swaps this tick", _fmt(latest.get("swaps_failed_tick", 0))),
            ("Cumulative volume (USD)", _fmt(net_df["swap_volume_usd_tick"].sum())),
            ("Cumulative LP fees (USD)", _fmt(net_df["fees_usd_tick"].sum())),
            ("Flash swaps (total)", _fmt(net_df["flash_swaps_tick"].sum())),
            ("Rejected flash swaps (total)", _fmt(net_df["flash_failed_tick"].sum())),
            ("Treasury LP shares", _fmt(latest.get("treasury_shares", 0.0))),
        ]
        _render_kpi_grid(kpis, columns=5)

        st.subheader("Swaps (per tick)")
        st.line_chart(net_df, x="tick", y=["swaps_executed_tick", "multi_hop_swaps_tick", "swaps_failed_tick"])

        st.subheader("Volume and Fees (USD per tick)")
        st.line_chart(net_df, x="tick", y=["swap_volume_usd_tick", "fees_usd_tick"])

        st.subheader("Flash Swaps and Liquidity Moves (per tick)")
        st.line_chart(
            net_df,
            x="tick",
            y=["flash_swaps_tick", "flash_failed_tick", "liquidity_adds_tick", "liquidity_removes_tick"],
        )

with tab_pools:
    st.subheader("Pools (latest tick)")
    if pool_df.empty:
        st.info("No pool rows yet.")
    else:
        latest_tick = pool_df["tick"].max()
        cur = pool_df[pool_df["tick"] == latest_tick].drop_duplicates(["pool_id"], keep="last")
        cur = cur.sort_values("tvl_usd", ascending=False)
        st.dataframe(_format_table_numbers(cur.drop(columns=["address"])), use_container_width=True)

        st.subheader("Spot price vs TWAP")
        sel = st.selectbox("Select pool", sorted(engine.pools))
        hist = engine.metrics.pool_history(sel)
        if not hist.empty:
            st.line_chart(hist, x="tick", y=["spot_price0", "twap_price0"])
            st.caption(f"Price of {hist['token0'].iloc[-1]} in {hist['token1'].iloc[-1]}.")
            st.line_chart(hist, x="tick", y=["reserve0", "reserve1"])
            drift = hist["k"].pct_change().replace([np.inf, -np.inf], np.nan).dropna()
            if not drift.empty:
                st.caption(f"Median per-tick change in k: {drift.median():.6%}")

        st.subheader("TVL by pool (USD)")
        st.line_chart(engine.metrics.pool_pivot("tvl_usd"))

with tab_quote:
    st.subheader("Route Quote")
    symbols = sorted(engine.tokens)
    q1, q2, q3 = st.columns(3)
    sym_in = q1.selectbox("Token in", symbols, index=0)
    sym_out = q2.selectbox("Token out", symbols, index=min(1, len(symbols) - 1))
    usd_in = q3.number_input("Amount in (USD)", min_value=1.0, value=1000.0, step=100.0)
    if sym_in == sym_out:
        st.info("Pick two different tokens.")
    else:
        amount_in = engine.units(sym_in, usd_in)
        plan = engine.router.find_route(engine.tokens[sym_in].address, engine.tokens[sym_out].address, amount_in)
        if not plan.ok:
            st.warning(f"No route: {plan.reason}")
        else:
            rows = []
            for hop in plan.hops:
                rows.append({
                    "pool": engine.pool_label(engine.factory.pool(hop.pool_id)),
                    "in": engine.symbols[hop.asset_in],
                    "out": engine.symbols[hop.asset_out],
                    "amount_in": hop.amount_in / 10 ** engine.tokens[engine.symbols[hop.asset_in]].decimals,
                    "amount_out": hop.amount_out / 10 ** engine.tokens[engine.symbols[hop.asset_out]].decimals,
                })
            st.dataframe(pd.DataFrame(rows), use_container_width=True)
            out_usd = engine.usd(sym_out, plan.expected_amount_out)
            st.metric("Expected out (USD at reference)", _fmt(out_usd), delta=_fmt(out_usd - usd_in))
            try:
                needed = engine.router.get_amounts_in(plan.expected_amount_out, plan.path)[0]
                st.caption(f"Exact-output input for the same result: {needed} base units (quoted in: {amount_in}).")
            except AMMError as exc:
                st.caption(f"Exact-output quote unavailable: {exc.reason}")

with tab_events:
    st.subheader("Event Log")
    recent = engine.log.tail(2000)
    if not recent:
        st.info("No events yet.")
    else:
        kinds = sorted({e.event_type for e in recent})
        shown = st.multiselect("Event types", kinds, default=[k for k in kinds if k != "Sync"])
        rows = [
            {"timestamp": e.timestamp, "event": e.event_type, "source": e.source, "actor": e.actor_id,
             "meta": _format_event_meta(e.meta)}
            for e in reversed(recent) if e.event_type in shown
        ]
        st.dataframe(pd.DataFrame(rows[:300]), use_container_width=True)
