"""
Dash application for operating a belt-stop sensor.
"""

import asyncio
import logging
import threading
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, TypeVar

import dash  # type: ignore
from dash import Input, Output, State, ctx, dcc, html, no_update

from ..export import (
    ALL_FILENAME,
    day_filename,
    day_range,
    export_all_csv,
    export_day_csv,
    export_month_csv,
    hourly_summary,
    month_filename,
)
from ..models import (
    BreakWindows,
    ScheduleWindow,
    Thresholds,
    hhmm_to_minutes,
    minutes_to_hhmm,
)
from ..session import SessionController, SessionOptions, SyncStatus
from ..store import EventStore
from ..transport import DeviceSelector, Transport
from .plots import create_hourly_stops_figure

logger = logging.getLogger(__name__)

T = TypeVar("T")

PANEL_STYLE = {
    "width": "30%",
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}

BUTTON_STYLE = {
    "marginRight": "10px",
    "marginTop": "5px",
    "padding": "8px 16px",
    "color": "white",
    "backgroundColor": "#007bff",
    "border": "none",
    "borderRadius": "4px",
    "cursor": "pointer",
}

INPUT_STYLE = {"width": "80px", "marginRight": "10px"}


def timezone_offset_options() -> List[dict]:
    """Dropdown entries for the offset sent with TIME, in 15 minute steps."""
    options: List[dict] = [{"label": "Auto (host clock)", "value": "auto"}]
    for minutes in range(-12 * 60, 14 * 60 + 1, 15):
        sign = "+" if minutes >= 0 else "-"
        hours, mins = divmod(abs(minutes), 60)
        options.append({"label": f"UTC{sign}{hours:02d}:{mins:02d}", "value": minutes})
    return options


class BeltStopApp:
    """Web dashboard around a ``SessionController``.

    The session lives on an asyncio loop owned by a background thread, so
    BLE traffic never blocks the web server. Dash callbacks hand user
    actions to that loop, where they are queued behind any inbound data and
    executed one at a time. A ``dcc.Interval`` refreshes the status panels.

    Attributes:
        session: The controller, available once the worker has started.
        app: Dash application instance.
    """

    def __init__(
        self,
        transport: Transport,
        store: EventStore,
        selector: Optional[DeviceSelector] = None,
        options: Optional[SessionOptions] = None,
        update_interval_ms: int = 1000,
        auto_connect: bool = False,
    ):
        self._transport = transport
        self._store = store
        self._selector = selector or DeviceSelector()
        self._options = options or SessionOptions()
        self._auto_connect = auto_connect
        self.update_interval = update_interval_ms

        self.session: Optional[SessionController] = None
        self._worker: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready = threading.Event()

        self.app = dash.Dash(__name__, title="Belt Stop Sync")
        # Callable layout: re-read the saved configuration on every page load
        self.app.layout = self._build_layout
        self._setup_callbacks()

    # --- Background session loop -------------------------------------------

    def _session_worker(self) -> None:
        async def run_session() -> None:
            self.session = await SessionController.create(
                self._transport, self._store, options=self._options
            )
            self._ready.set()
            if self._auto_connect:
                self.session.post(
                    lambda: self.session.connect(self._selector), "Connect"
                )
            await self.session.run()

        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(run_session())
        except Exception as e:
            logger.error(f"💥 Session worker fatal error: {e}")
        finally:
            self._ready.set()
            self._loop.close()
            logger.info("🏁 Session worker finished")

    def start(self, timeout: float = 10.0) -> None:
        """Start the session thread and wait until settings are loaded."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._ready.clear()
        self._worker = threading.Thread(
            target=self._session_worker, daemon=True, name="SessionWorker"
        )
        self._worker.start()
        if not self._ready.wait(timeout):
            logger.warning("⚠️ Session worker did not become ready in time")

    def stop(self) -> None:
        """Disconnect, stop the session loop and join the worker thread."""
        logger.info("🛑 Stopping session...")
        loop, session = self._loop, self.session
        if loop is not None and session is not None and not loop.is_closed():
            future = asyncio.run_coroutine_threadsafe(session.teardown(), loop)
            try:
                future.result(timeout=10.0)
            except Exception as e:
                logger.warning(f"⚠️ Error during session teardown: {e}")

        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=5.0)
            if self._worker.is_alive():
                logger.warning("⚠️ Session worker did not stop gracefully")
            else:
                logger.info("✅ Session worker stopped")

    def _submit(self, name: str, action: Callable[[], Awaitable[Any]]) -> bool:
        """Queue ``action`` on the session loop without waiting for it."""
        loop, session = self._loop, self.session
        if loop is None or session is None or loop.is_closed():
            logger.warning(f"⚠️ {name} ignored: session not running")
            return False
        loop.call_soon_threadsafe(session.post, action, name)
        logger.info(f"▶️ {name} queued")
        return True

    def _call(self, coro: Coroutine[Any, Any, T], timeout: float = 30.0) -> T:
        """Run ``coro`` on the session loop and wait for its result."""
        if self._loop is None or self._loop.is_closed():
            coro.close()
            raise RuntimeError("Session loop is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    # --- Layout --------------------------------------------------------------

    def _build_layout(self) -> html.Div:
        """Dashboard layout, populated from the session's saved configuration."""
        session = self.session
        config = session.config if session is not None else None
        schedule = config.schedule if config else ScheduleWindow()
        breaks = config.breaks if config else BreakWindows()
        thresholds = config.thresholds if config else Thresholds()
        tz_value: Any = "auto"
        if config is not None and config.tz_offset_minutes is not None:
            tz_value = config.tz_offset_minutes
        today = date.today()

        return html.Div(
            [
                html.H1("Belt Stop Sync", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection"),
                                html.Div(id="connection-status", children="Initializing..."),
                                html.Div(id="connection-details", children=""),
                                html.Button("Connect", id="connect-btn", style=BUTTON_STYLE),
                                html.Button(
                                    "Disconnect",
                                    id="disconnect-btn",
                                    style={**BUTTON_STYLE, "backgroundColor": "#6c757d"},
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Calibration"),
                                html.Div(
                                    [
                                        html.Span("Vibration: "),
                                        html.Span(id="vibration-readout", children="-"),
                                        html.Span(" g"),
                                    ],
                                    style={"fontSize": "20px", "fontFamily": "monospace"},
                                ),
                                html.Button("Calibration ON", id="cal-on-btn", style=BUTTON_STYLE),
                                html.Button(
                                    "Calibration OFF",
                                    id="cal-off-btn",
                                    style={**BUTTON_STYLE, "backgroundColor": "#6c757d"},
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Sync"),
                                html.Div(id="sync-status", children="idle"),
                                html.Div(id="shift-info", children=""),
                                html.Button(
                                    "Sync backlog",
                                    id="sync-btn",
                                    style={**BUTTON_STYLE, "backgroundColor": "#28a745"},
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ]
                ),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Thresholds"),
                                html.Label("Threshold (g)"),
                                dcc.Input(
                                    id="thresh-input",
                                    type="number",
                                    step=0.001,
                                    value=thresholds.threshold_g,
                                    style=INPUT_STYLE,
                                ),
                                html.Label("Hysteresis (g)"),
                                dcc.Input(
                                    id="hyst-input",
                                    type="number",
                                    step=0.001,
                                    value=thresholds.hysteresis_g,
                                    style=INPUT_STYLE,
                                ),
                                html.Br(),
                                html.Label("Seconds down"),
                                dcc.Input(
                                    id="secs-down-input",
                                    type="number",
                                    step=1,
                                    value=thresholds.seconds_down,
                                    style=INPUT_STYLE,
                                ),
                                html.Label("Seconds up"),
                                dcc.Input(
                                    id="secs-up-input",
                                    type="number",
                                    step=1,
                                    value=thresholds.seconds_up,
                                    style=INPUT_STYLE,
                                ),
                                html.Br(),
                                html.Button(
                                    "Send thresholds", id="send-thresh-btn", style=BUTTON_STYLE
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Schedule"),
                                dcc.Checklist(
                                    id="sched-enabled",
                                    options=[{"label": " Window enabled", "value": "on"}],
                                    value=["on"] if schedule.enabled else [],
                                ),
                                html.Label("Start"),
                                dcc.Input(
                                    id="sched-start",
                                    type="text",
                                    value=minutes_to_hhmm(schedule.start_min),
                                    style=INPUT_STYLE,
                                ),
                                html.Label("End"),
                                dcc.Input(
                                    id="sched-end",
                                    type="text",
                                    value=minutes_to_hhmm(schedule.end_min),
                                    style=INPUT_STYLE,
                                ),
                                html.Br(),
                                html.Label("Time zone"),
                                dcc.Dropdown(
                                    id="tz-dropdown",
                                    options=timezone_offset_options(),
                                    value=tz_value,
                                    clearable=False,
                                    style={"width": "220px"},
                                ),
                                html.Button(
                                    "Send time + schedule",
                                    id="send-sched-btn",
                                    style=BUTTON_STYLE,
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Breaks"),
                                dcc.Checklist(
                                    id="breaks-enabled",
                                    options=[{"label": " Breaks enabled", "value": "on"}],
                                    value=["on"] if breaks.enabled else [],
                                ),
                                html.Label("Break 1"),
                                dcc.Input(
                                    id="b1-start",
                                    type="text",
                                    value=minutes_to_hhmm(breaks.b1_start_min),
                                    style=INPUT_STYLE,
                                ),
                                dcc.Input(
                                    id="b1-end",
                                    type="text",
                                    value=minutes_to_hhmm(breaks.b1_end_min),
                                    style=INPUT_STYLE,
                                ),
                                html.Br(),
                                html.Label("Break 2"),
                                dcc.Input(
                                    id="b2-start",
                                    type="text",
                                    value=minutes_to_hhmm(breaks.b2_start_min),
                                    style=INPUT_STYLE,
                                ),
                                dcc.Input(
                                    id="b2-end",
                                    type="text",
                                    value=minutes_to_hhmm(breaks.b2_end_min),
                                    style=INPUT_STYLE,
                                ),
                                html.Br(),
                                html.Button("Send breaks", id="send-breaks-btn", style=BUTTON_STYLE),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ]
                ),
                html.Div(
                    [
                        html.H3("Stops"),
                        dcc.DatePickerSingle(id="chart-day", date=today.isoformat()),
                        dcc.Graph(id="stops-graph"),
                    ],
                    style={"padding": "10px"},
                ),
                html.Div(
                    [
                        html.H3("Export CSV"),
                        dcc.DatePickerSingle(id="export-day", date=today.isoformat()),
                        html.Button("Export day", id="export-day-btn", style=BUTTON_STYLE),
                        dcc.Input(
                            id="export-year", type="number", value=today.year, style=INPUT_STYLE
                        ),
                        dcc.Input(
                            id="export-month",
                            type="number",
                            min=1,
                            max=12,
                            value=today.month,
                            style=INPUT_STYLE,
                        ),
                        html.Button("Export month", id="export-month-btn", style=BUTTON_STYLE),
                        html.Button(
                            "Export all",
                            id="export-all-btn",
                            style={**BUTTON_STYLE, "backgroundColor": "#6c757d"},
                        ),
                        html.Div(id="export-feedback", style={"marginTop": "5px"}),
                        dcc.Download(id="csv-download"),
                    ],
                    style={"padding": "10px"},
                ),
                html.Div(
                    [
                        html.H3("Activity"),
                        html.Div(id="action-feedback", style={"color": "#6c757d"}),
                        html.Pre(
                            id="activity-log",
                            style={
                                "height": "240px",
                                "overflowY": "scroll",
                                "backgroundColor": "#f8f9fa",
                                "padding": "8px",
                                "fontSize": "12px",
                            },
                        ),
                    ],
                    style={"padding": "10px"},
                ),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ]
        )

    # --- Callbacks -----------------------------------------------------------

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("vibration-readout", "children"),
                Output("sync-status", "children"),
                Output("shift-info", "children"),
                Output("activity-log", "children"),
                Output("connect-btn", "disabled"),
                Output("disconnect-btn", "disabled"),
                Output("cal-on-btn", "disabled"),
                Output("cal-off-btn", "disabled"),
                Output("send-thresh-btn", "disabled"),
                Output("send-sched-btn", "disabled"),
                Output("send-breaks-btn", "disabled"),
                Output("sync-btn", "disabled"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_status(n_intervals: int):  # type: ignore
            session = self.session
            if session is None:
                return (
                    "Initializing...",
                    "",
                    "-",
                    "",
                    "",
                    "",
                    True,
                    True,
                    True,
                    True,
                    True,
                    True,
                    True,
                    True,
                )

            phase = session.state.connection_phase.value
            connected = session.is_connected
            color = {"connected": "green", "connecting": "orange"}.get(phase, "red")
            status = html.Span(
                phase.capitalize(), style={"color": color, "fontWeight": "bold"}
            )

            tel = session.telemetry
            details: List[Any] = []
            if connected:
                details.append(html.Div(f"Device: {tel.device_id or session.device_name or '-'}"))
                if tel.firmware_version:
                    details.append(html.Div(f"Firmware: {tel.firmware_version}"))
                if tel.battery_mv is not None:
                    details.append(html.Div(f"Battery: {tel.battery_mv} mV"))
                if tel.unsent_count is not None:
                    details.append(html.Div(f"Unsynced on device: {tel.unsent_count}"))
            if session.last_error:
                details.append(html.Div(session.last_error, style={"color": "red"}))

            vibration = f"{tel.vibration_g:.6f}" if tel.vibration_g is not None else "-"

            sync_text = {
                SyncStatus.IDLE: "Not synced this session",
                SyncStatus.SYNCING: "Syncing...",
                SyncStatus.COMPLETE: "Sync complete.",
                SyncStatus.NOT_COMPLETE: "Sync not complete.",
            }.get(session.sync_status, session.sync_status.value)
            if session.state.last_sync_acked_index >= 0:
                sync_text += f" (last acked index {session.state.last_sync_acked_index})"

            shift: List[Any] = []
            if tel.shift_total is not None:
                shift.append(html.Div(f"Shift total: {tel.shift_total} stops"))
            if tel.last_stop is not None:
                started = datetime.fromtimestamp(tel.last_stop.start_epoch_seconds)
                shift.append(
                    html.Div(
                        f"Last stop: {started:%H:%M:%S}, "
                        f"{tel.last_stop.duration_ms / 1000:.1f}s"
                    )
                )

            activity = "\n".join(
                f"[{entry.timestamp:%Y-%m-%d %H:%M:%S}] {entry.text}"
                for entry in reversed(session.recent_activity(100))
            )

            busy = phase == "connecting"
            return (
                status,
                details,
                vibration,
                sync_text,
                shift,
                activity,
                connected or busy,
                not connected,
                not connected or session.calibration_on,
                not connected or not session.calibration_on,
                not connected,
                not connected,
                not connected,
                not connected or session.sync_status == SyncStatus.SYNCING,
            )

        @self.app.callback(  # type: ignore
            Output("stops-graph", "figure"),
            [Input("interval-component", "n_intervals"), Input("chart-day", "date")],
        )
        def update_chart(n_intervals: int, day_str: Optional[str]):  # type: ignore
            day = date.fromisoformat(day_str) if day_str else date.today()
            # Refresh every 10 ticks unless the day changed
            if ctx.triggered_id == "interval-component" and n_intervals % 10 != 1:
                return no_update
            try:
                from_epoch, to_epoch = day_range(day)
                events = self._call(
                    self._store.query_events_in_range(from_epoch, to_epoch)
                )
            except Exception as e:
                logger.error(f"❌ Failed to load stops for chart: {e}")
                return no_update
            counts, downtime = hourly_summary(events, day)
            return create_hourly_stops_figure(counts, downtime, day)

        @self.app.callback(  # type: ignore
            Output("action-feedback", "children"),
            [
                Input("connect-btn", "n_clicks"),
                Input("disconnect-btn", "n_clicks"),
                Input("cal-on-btn", "n_clicks"),
                Input("cal-off-btn", "n_clicks"),
                Input("sync-btn", "n_clicks"),
                Input("send-thresh-btn", "n_clicks"),
                Input("send-sched-btn", "n_clicks"),
                Input("send-breaks-btn", "n_clicks"),
            ],
            [
                State("thresh-input", "value"),
                State("hyst-input", "value"),
                State("secs-down-input", "value"),
                State("secs-up-input", "value"),
                State("sched-enabled", "value"),
                State("sched-start", "value"),
                State("sched-end", "value"),
                State("tz-dropdown", "value"),
                State("breaks-enabled", "value"),
                State("b1-start", "value"),
                State("b1-end", "value"),
                State("b2-start", "value"),
                State("b2-end", "value"),
            ],
            prevent_initial_call=True,
        )
        def handle_action(  # type: ignore
            _connect,
            _disconnect,
            _cal_on,
            _cal_off,
            _sync,
            _thresh,
            _sched,
            _breaks,
            thresh,
            hyst,
            secs_down,
            secs_up,
            sched_enabled,
            sched_start,
            sched_end,
            tz_value,
            breaks_enabled,
            b1_start,
            b1_end,
            b2_start,
            b2_end,
        ):
            session = self.session
            if session is None:
                return "Session not running"
            trigger = ctx.triggered_id

            if trigger == "connect-btn":
                self._submit("Connect", lambda: session.connect(self._selector))
                return "Connecting..."
            if trigger == "disconnect-btn":
                self._submit("Disconnect", session.disconnect)
                return "Disconnecting..."
            if trigger == "cal-on-btn":
                self._submit("Calibration ON", lambda: session.set_calibration_mode(True))
                return "Calibration mode ON sent"
            if trigger == "cal-off-btn":
                self._submit("Calibration OFF", lambda: session.set_calibration_mode(False))
                return "Calibration mode OFF sent"
            if trigger == "sync-btn":
                self._submit("Sync", session.request_sync)
                return "Sync requested"
            if trigger == "send-thresh-btn":
                try:
                    thresholds = Thresholds(
                        threshold_g=float(thresh),
                        hysteresis_g=float(hyst),
                        seconds_down=int(secs_down),
                        seconds_up=int(secs_up),
                    )
                except (TypeError, ValueError):
                    return "Thresholds must be numbers"
                self._submit("Send thresholds", lambda: session.send_thresholds(thresholds))
                return "Thresholds sent"
            if trigger == "send-sched-btn":
                schedule = ScheduleWindow(
                    start_min=hhmm_to_minutes(sched_start),
                    end_min=hhmm_to_minutes(sched_end),
                    enabled=bool(sched_enabled),
                )
                tz_offset = None if tz_value in (None, "auto") else int(tz_value)

                async def send_time_and_schedule() -> None:
                    await session.set_tz_offset(tz_offset)
                    await session.send_time_only()
                    await session.send_schedule(schedule)

                self._submit("Send time + schedule", send_time_and_schedule)
                return "Time and schedule sent"
            if trigger == "send-breaks-btn":
                breaks = BreakWindows(
                    b1_start_min=hhmm_to_minutes(b1_start),
                    b1_end_min=hhmm_to_minutes(b1_end),
                    b2_start_min=hhmm_to_minutes(b2_start),
                    b2_end_min=hhmm_to_minutes(b2_end),
                    enabled=bool(breaks_enabled),
                )
                self._submit("Send breaks", lambda: session.send_breaks(breaks))
                return "Breaks sent"
            return no_update

        @self.app.callback(  # type: ignore
            [Output("csv-download", "data"), Output("export-feedback", "children")],
            [
                Input("export-day-btn", "n_clicks"),
                Input("export-month-btn", "n_clicks"),
                Input("export-all-btn", "n_clicks"),
            ],
            [
                State("export-day", "date"),
                State("export-year", "value"),
                State("export-month", "value"),
            ],
            prevent_initial_call=True,
        )
        def export_csv(_day, _month, _all, day_str, year, month):  # type: ignore
            trigger = ctx.triggered_id
            try:
                if trigger == "export-day-btn":
                    if not day_str:
                        return no_update, "Pick a date"
                    day = date.fromisoformat(day_str)
                    csv_text = self._call(export_day_csv(self._store, day))
                    filename = day_filename(day)
                elif trigger == "export-month-btn":
                    y, m = int(year), int(month)
                    csv_text = self._call(export_month_csv(self._store, y, m))
                    filename = month_filename(y, m)
                elif trigger == "export-all-btn":
                    csv_text = self._call(export_all_csv(self._store))
                    filename = ALL_FILENAME
                else:
                    return no_update, no_update
            except (TypeError, ValueError) as e:
                return no_update, f"Invalid export selection: {e}"
            except Exception as e:
                logger.error(f"❌ Export failed: {e}")
                return no_update, f"Export failed: {e}"

            rows = max(0, csv_text.count("\n") - 1)
            logger.info(f"📄 Exported {rows} events to {filename}")
            return dcc.send_string(csv_text, filename), f"{filename}: {rows} events"

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the session thread and serve the dashboard until interrupted."""
        self.start()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop()


def create_app(transport: Transport, store: EventStore, **kwargs: Any) -> BeltStopApp:
    """Factory function to create the dashboard app.

    Args:
        transport: BleTransport for a real device or MockTransport for a demo
        store: Event store shared with exports
        **kwargs: Additional arguments for BeltStopApp

    Returns:
        BeltStopApp instance
    """
    return BeltStopApp(transport=transport, store=store, **kwargs)
