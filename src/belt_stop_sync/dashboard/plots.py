"""
Plot components for the belt stop dashboard.
"""

from datetime import date
from typing import List

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore


def create_empty_figure(title: str, message: str = "No stops recorded") -> go.Figure:
    """Placeholder figure with a centered message."""
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text=message,
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(
        title=title,
        xaxis=dict(visible=False),
        yaxis=dict(visible=False),
        height=320,
    )
    return fig


def create_hourly_stops_figure(
    counts: List[int], downtime_minutes: List[float], day: date
) -> go.Figure:
    """Bar chart of stops per hour with downtime minutes on a second axis.

    Args:
        counts: 24 stop counts, index = local hour.
        downtime_minutes: 24 summed stop durations in minutes.
        day: Day being shown, used in the title.
    """
    title = f"Belt stops on {day.isoformat()}"
    if not any(counts):
        return create_empty_figure(title)

    hours = [f"{h:02d}:00" for h in range(24)]
    fig = make_subplots(specs=[[{"secondary_y": True}]])

    fig.add_trace(
        go.Bar(
            x=hours,
            y=counts,
            name="Stops",
            marker=dict(color="#dc3545"),
        ),
        secondary_y=False,
    )

    fig.add_trace(
        go.Scatter(
            x=hours,
            y=[round(m, 2) for m in downtime_minutes],
            mode="lines+markers",
            name="Downtime (min)",
            line=dict(color="#007bff", width=2),
        ),
        secondary_y=True,
    )

    total_stops = sum(counts)
    total_minutes = sum(downtime_minutes)
    fig.update_layout(
        title=f"{title}: {total_stops} stops, {total_minutes:.1f} min down",
        showlegend=True,
        height=320,
        margin=dict(l=50, r=50, t=50, b=50),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
        bargap=0.15,
    )
    fig.update_xaxes(title_text="Hour of day")
    fig.update_yaxes(title_text="Stops", secondary_y=False, rangemode="tozero")
    fig.update_yaxes(title_text="Downtime (min)", secondary_y=True, rangemode="tozero")

    return fig
