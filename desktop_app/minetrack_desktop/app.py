"""Entry point for the desktop companion."""

from __future__ import annotations

import sys

from PySide6.QtWidgets import QApplication, QMainWindow, QMessageBox

from .api_client import ApiError
from .config import configure_logging, load_config
from .session import TrackerSession
from .widgets.operation_panel import ActiveOperationPanel


def main() -> None:
    """Start the Qt application."""

    app = QApplication(sys.argv)
    app.setApplicationName("MineTrack Desktop")
    app.setOrganizationName("MineTrack")
    config = load_config()
    configure_logging(config.log_level)

    session = TrackerSession.from_config(config)
    session.restore()

    window = QMainWindow()
    window.setWindowTitle("MineTrack Desktop Companion")
    panel = ActiveOperationPanel(session, tick_interval_ms=config.tick_interval_ms)
    window.setCentralWidget(panel)
    window.resize(480, 320)
    window.show()

    try:
        session.resume()
    except ApiError as exc:  # pragma: no cover - UI feedback
        QMessageBox.warning(window, "API error", str(exc))
    panel.refresh()
    panel.refresh_queue()

    sys.exit(app.exec())


__all__ = ["main"]
