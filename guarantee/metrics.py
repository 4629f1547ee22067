from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    protocol_rows: List[Dict[str, Any]] = field(default_factory=list)
    venue_rows: List[Dict[str, Any]] = field(default_factory=list)
    report_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_protocol(self, row: Dict[str, Any]) -> None:
        self.protocol_rows.append(row)

    def add_venue_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.venue_rows.extend(rows)

    def add_report(self, row: Dict[str, Any]) -> None:
        self.report_rows.append(row)

    def protocol_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.protocol_rows)

    def venue_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.venue_rows)

    def report_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.report_rows)

    def shortfall_by_venue(self) -> pd.DataFrame:
        df = self.report_df()
        if df.empty:
            return pd.DataFrame(columns=["venue_id", "months", "missing_total", "settled_total"])
        grouped = df.groupby("venue_id").agg(
            months=("month", "count"),
            missing_total=("missing_revenue", "sum"),
            settled_total=("settled", "sum"),
        )
        return grouped.reset_index()
