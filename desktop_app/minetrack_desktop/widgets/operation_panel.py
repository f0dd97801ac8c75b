"""Active operation panel."""

from __future__ import annotations

from typing import Optional

from PySide6.QtCore import QTimer
from PySide6.QtGui import QFont
from PySide6.QtWidgets import (QGridLayout, QGroupBox, QHBoxLayout, QLabel,
                               QMessageBox, QPushButton, QVBoxLayout, QWidget)

from ..api_client import ApiError
from ..errors import TrackerError
from ..schemas import reference_id
from ..session import TrackerSession
from ..utils import format_elapsed


class ActiveOperationPanel(QWidget):
    """Shows the active operation; the timer only reads tracker state."""

    def __init__(self, session: TrackerSession, *, tick_interval_ms: int = 1000,
                 parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.session = session

        self.elapsed_label = QLabel("00:00:00")
        font = QFont()
        font.setPointSize(20)
        font.setBold(True)
        self.elapsed_label.setFont(font)

        self.equipment_label = QLabel("-")
        self.activity_label = QLabel("-")
        self.repeat_label = QLabel("-")
        self.total_label = QLabel("00:00:00")
        self.queue_label = QLabel("0")

        self.stop_button = QPushButton("Stop")
        self.repeat_button = QPushButton("+1")
        self.sync_button = QPushButton("Sync")

        self.stop_button.clicked.connect(self._handle_stop)
        self.repeat_button.clicked.connect(self._handle_repeat)
        self.sync_button.clicked.connect(self._handle_sync)

        self._build_ui()

        self.timer = QTimer(self)
        self.timer.timeout.connect(self.refresh)
        self.timer.start(max(tick_interval_ms, 250))
        self.refresh()

    def _build_ui(self) -> None:
        group = QGroupBox("Active operation")
        grid = QGridLayout(group)
        grid.addWidget(QLabel("Equipment:"), 0, 0)
        grid.addWidget(self.equipment_label, 0, 1)
        grid.addWidget(QLabel("Activity:"), 1, 0)
        grid.addWidget(self.activity_label, 1, 1)
        grid.addWidget(QLabel("Elapsed:"), 2, 0)
        grid.addWidget(self.elapsed_label, 2, 1)
        grid.addWidget(QLabel("Repeats:"), 3, 0)
        grid.addWidget(self.repeat_label, 3, 1)
        grid.addWidget(QLabel("Session total:"), 4, 0)
        grid.addWidget(self.total_label, 4, 1)
        grid.addWidget(QLabel("Pending sync:"), 5, 0)
        grid.addWidget(self.queue_label, 5, 1)

        buttons = QHBoxLayout()
        buttons.addWidget(self.stop_button)
        buttons.addWidget(self.repeat_button)
        buttons.addStretch(1)
        buttons.addWidget(self.sync_button)

        layout = QVBoxLayout(self)
        layout.addWidget(group)
        layout.addLayout(buttons)

    # ------------------------------------------------------------------
    def refresh(self) -> None:
        tracker = self.session.tracker
        active = tracker.active
        if active is None:
            self.equipment_label.setText("-")
            self.activity_label.setText("-")
            self.repeat_label.setText("-")
            self.elapsed_label.setText("00:00:00")
        else:
            suffix = " (offline)" if active.operation.is_local else ""
            self.equipment_label.setText((active.equipment.name or active.equipment.id) + suffix)
            activity = active.operation.activity
            self.activity_label.setText(getattr(activity, "name", None) or reference_id(activity) or "-")
            self.repeat_label.setText(str(active.repeat_count))
            self.elapsed_label.setText(format_elapsed(tracker.elapsed_seconds()))
        self.total_label.setText(format_elapsed(tracker.session_total_seconds))
        self.stop_button.setEnabled(active is not None)
        self.repeat_button.setEnabled(active is not None)

    def refresh_queue(self) -> None:
        self.queue_label.setText(str(len(self.session.queue)))

    # ------------------------------------------------------------------
    def _handle_stop(self) -> None:
        try:
            self.session.tracker.stop()
        except (ApiError, TrackerError) as exc:
            QMessageBox.warning(self, "Stop failed", str(exc))
        self.refresh()
        self.refresh_queue()

    def _handle_repeat(self) -> None:
        active = self.session.tracker.active
        if active is None:
            return
        self.session.tracker.increment_repeat_count(active.operation_id)
        self.refresh()

    def _handle_sync(self) -> None:
        try:
            report = self.session.resume()
        except ApiError as exc:
            QMessageBox.warning(self, "Sync failed", str(exc))
            return
        self.refresh()
        self.refresh_queue()
        if report is not None and report.errors:
            details = "\n".join(f"{failure.kind} {failure.operation_id}: {failure.message}"
                                for failure in report.errors)
            QMessageBox.warning(self, "Some actions were dropped", details)


__all__ = ["ActiveOperationPanel"]
