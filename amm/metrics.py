from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional
import pandas as pd

@dataclass
class MetricsStore:
    """Per-tick market rows plus one row per pool per sampled tick."""
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, network_row: Optional[Dict[str, Any]] = None,
               pool_rows: Optional[List[Dict[str, Any]]] = None) -> None:
        if network_row is not None:
            self.network_rows.append(network_row)
        if pool_rows:
            self.pool_rows.extend(pool_rows)

    def last_tick(self, kind: str = "network") -> Optional[int]:
        rows = self.network_rows if kind == "network" else self.pool_rows
        if not rows:
            return None
        return rows[-1].get("tick")

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def pool_history(self, pool_id: str) -> pd.DataFrame:
        df = self.pool_df()
        if df.empty:
            return df
        return df[df["pool_id"] == pool_id].sort_values("tick")

    def pool_pivot(self, column: str) -> pd.DataFrame:
        """One column per pool, indexed by tick."""
        df = self.pool_df()
        if df.empty or column not in df.columns:
            return pd.DataFrame()
        df = df.drop_duplicates(["tick", "pool_id"], keep="last")
        return df.pivot(index="tick", columns="pool_id", values=column)
