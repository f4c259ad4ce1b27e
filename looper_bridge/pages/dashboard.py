from __future__ import annotations

import logging
from typing import Hashable

from nicegui import ui

from looper_bridge.common.logging_config import attach_ui_log, detach_ui_log
from looper_bridge.services.status_codec import CommandError
from looper_bridge.services.status_hub import (
    HubEvent,
    NoDeviceError,
    StatusHub,
    Subscription,
)
from looper_bridge.state import (
    DeviceConnection,
    DeviceError,
    DeviceFound,
    DeviceLost,
    DeviceStatus,
    StatusUpdate,
    TrackStatus,
)

# How often a session drains its hub queue
PUMP_INTERVAL_S = 0.1


def format_connection(conn: DeviceConnection) -> str:
    if conn.connected:
        return f"Connected: {conn.device_id} @ {conn.address}"
    return conn.state.value.capitalize()


def format_track(index: int, track: TrackStatus, selected: bool) -> str:
    marker = "*" if selected else " "
    return (
        f"{marker}T{index + 1} {track.state.name.lower():<11} "
        f"lvl {track.level_db:>3} dB  pan {track.pan_units:>3}  fb {track.feedback_percent:>3}%  "
        f"pos {track.position_samples}/{track.length_samples}"
    )


class DashboardPage:
    """One subscriber session: attaches to the hub and renders what it pushes."""

    def __init__(self, hub: StatusHub) -> None:
        self.hub = hub
        self.handle: Hashable | None = None
        self.subscription: Subscription | None = None
        self.detached = False

        self.connection_label: ui.label | None = None
        self.track_labels: list[ui.label] = []
        self.command_input: ui.input | None = None
        self.event_log: ui.log | None = None
        self.pump_timer: ui.timer | None = None

    # ---- Hub session ----

    def attach(self, handle: Hashable) -> None:
        self.handle = handle
        self.detached = False
        self.subscription = self.hub.subscribe(handle)
        if self.event_log:
            attach_ui_log(self.event_log)
        if self.pump_timer:
            self.pump_timer.activate()
        self.render_connection(self.subscription.snapshot.connection)
        self.render_status(self.subscription.snapshot.status)

    def detach(self) -> None:
        self.detached = True
        if self.pump_timer:
            self.pump_timer.deactivate()
        if self.handle is not None:
            self.hub.unsubscribe(self.handle)
        self.subscription = None
        if self.event_log:
            detach_ui_log(self.event_log)

    def resume(self) -> None:
        """Re-attach after the browser reconnects within NiceGUI's reconnect window."""
        if self.detached and self.handle is not None:
            self.attach(self.handle)

    def pump(self) -> None:
        sub = self.subscription
        if self.detached or sub is None:
            return
        if sub.dropped:
            # Dropped as a slow subscriber: take a fresh snapshot
            self.attach(sub.handle)
            return
        for event in sub.drain():
            self.apply_event(event)

    def apply_event(self, event: HubEvent) -> None:
        if isinstance(event, StatusUpdate):
            self.render_status(event.status)
        elif isinstance(event, DeviceFound):
            self.render_connection(self.hub.connection)
            ui.notify(f"Looper {event.device_id} found at {event.address}", color="positive")
        elif isinstance(event, DeviceLost):
            self.render_connection(self.hub.connection)
            ui.notify("Looper connection lost", color="warning")
        elif isinstance(event, DeviceError):
            ui.notify(f"Device error: {event.message}", color="negative")

    # ---- Rendering ----

    def render_connection(self, conn: DeviceConnection) -> None:
        if self.connection_label:
            self.connection_label.text = format_connection(conn)
            self.connection_label.style(
                "color: #21BA45" if conn.connected else "color: #DB2828"
            )

    def render_status(self, status: DeviceStatus) -> None:
        for i, label in enumerate(self.track_labels):
            if i < len(status.tracks):
                label.text = format_track(i, status.tracks[i], i == status.selected_track)
            else:
                label.text = f" T{i + 1} -"

    # ---- Commands ----

    async def send_command(self, text: str) -> None:
        if not text:
            ui.notify("Enter a command", color="warning")
            return
        try:
            self.hub.submit_command(text)
            logging.info("Command %s submitted", text)
        except NoDeviceError as e:
            ui.notify(str(e), color="warning")
        except CommandError as e:
            ui.notify(f"Invalid command: {e}", color="negative")

    # ---- UI ----

    def build(self) -> None:
        with ui.card().classes("w-full"):
            with ui.row().classes("items-center gap-4"):
                ui.label("Looper").classes("text-md font-medium")
                self.connection_label = ui.label("Disconnected").classes("text-sm")
            with ui.column().classes("gap-0 font-mono"):
                self.track_labels = [
                    ui.label("").classes("text-sm whitespace-pre")
                    for _ in range(self.hub.status.track_count)
                ]

        with ui.card().classes("w-full"):
            with ui.row().classes("items-center gap-2"):
                self.command_input = ui.input(
                    label="Command", placeholder="STATUS / TRACK_1_LEVEL_-6 / record"
                ).classes("w-80")

                async def handle_send() -> None:
                    await self.send_command((self.command_input.value or "").strip())

                self.command_input.on("keydown.enter", handle_send)
                ui.button("Send", on_click=handle_send).props("unelevated color=primary")
                ui.button("Status", on_click=lambda: self.send_command("STATUS")).props(
                    "unelevated"
                )
            self.event_log = ui.log(max_lines=200).classes("w-full h-40")

        self.pump_timer = ui.timer(interval=PUMP_INTERVAL_S, callback=self.pump)
