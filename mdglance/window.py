"""Qt window for the daemon process."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from PySide6.QtCore import QObject, QRunnable, Qt, QThreadPool, QUrl, Signal
from PySide6.QtGui import QAction
from PySide6.QtWebEngineWidgets import QWebEngineView
from PySide6.QtWidgets import QApplication, QFileDialog, QMainWindow

from .config import AppConfig
from .document import DocumentSnapshot, DocumentState, has_supported_extension
from .errors import EndpointBusyError, MdGlanceError
from .instance import InstanceServer, probe_and_forward
from .renderer import MarkdownRenderer
from .watcher import WatchController

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = (900, 700)
OPEN_DIALOG_FILTER = "Documents (*.md *.markdown *.puml *.plantuml)"


class CoreSignals(QObject):
    """Notifications from the core, emitted on worker threads and delivered on the GUI thread."""

    file_loaded = Signal(object)
    content_changed = Signal(object)
    activate_requested = Signal()


class RenderWorkerSignals(QObject):
    """Signals emitted by background render workers."""

    finished = Signal(int, str, str)


class RenderWorker(QRunnable):
    """Render the current document to HTML in a worker thread."""

    def __init__(self, state: DocumentState, renderer: MarkdownRenderer, request_id: int):
        super().__init__()
        self.state = state
        self.renderer = renderer
        self.request_id = request_id
        self.signals = RenderWorkerSignals()

    def run(self) -> None:
        snapshot = self.state.snapshot()
        try:
            html_doc = self.renderer.render_snapshot(snapshot)
            self.signals.finished.emit(self.request_id, html_doc, "")
        except Exception as exc:
            logger.exception("Render failed for %s", snapshot.canonical_path)
            self.signals.finished.emit(self.request_id, "", str(exc))


class GlanceWindow(QMainWindow):
    def __init__(self, state: DocumentState, signals: CoreSignals, config: AppConfig):
        super().__init__()
        self.state = state
        self.renderer = MarkdownRenderer(plantuml_enabled=config.extensions.plantuml)
        self._render_pool = QThreadPool(self)
        self._render_pool.setMaxThreadCount(1)
        self._render_request_id = 0
        self._active_render_workers: dict[int, RenderWorker] = {}
        self._quitting = False

        self.preview = QWebEngineView(self)
        # Drops go to the window so they open files instead of navigating.
        self.preview.setAcceptDrops(False)
        self.setCentralWidget(self.preview)
        self.setAcceptDrops(True)
        self.resize(*DEFAULT_WINDOW_SIZE)

        signals.file_loaded.connect(self._on_file_loaded)
        signals.content_changed.connect(self._on_content_changed)
        signals.activate_requested.connect(self.bring_to_front)
        self._add_shortcuts()
        self._refresh_preview()

    def _add_shortcuts(self) -> None:
        """Register window-level keyboard shortcuts."""
        open_action = QAction("Open", self)
        open_action.setShortcut("Ctrl+O")
        open_action.triggered.connect(self._open_file_dialog)
        self.addAction(open_action)

        refresh_action = QAction("Refresh", self)
        refresh_action.setShortcut("F5")
        refresh_action.triggered.connect(self._reload_current_file)
        self.addAction(refresh_action)

        quit_action = QAction("Quit", self)
        quit_action.setShortcut("Ctrl+Q")
        quit_action.triggered.connect(self._quit)
        self.addAction(quit_action)

    def bring_to_front(self) -> None:
        self.show()
        self.setWindowState(self.windowState() & ~Qt.WindowState.WindowMinimized)
        self.raise_()
        self.activateWindow()

    def _on_file_loaded(self, snapshot: DocumentSnapshot) -> None:
        self.statusBar().showMessage(f"Opened {snapshot.display_name}", 4000)
        self._refresh_preview()
        self.bring_to_front()

    def _on_content_changed(self, snapshot: DocumentSnapshot) -> None:
        self.statusBar().showMessage(f"Auto-refreshed {snapshot.display_name} (file changed on disk)", 4000)
        self._refresh_preview()

    def _refresh_preview(self) -> None:
        snapshot = self.state.snapshot()
        self.setWindowTitle(snapshot.window_title)
        self._render_request_id += 1
        worker = RenderWorker(self.state, self.renderer, self._render_request_id)
        worker.setAutoDelete(False)
        worker.signals.finished.connect(self._on_render_finished)
        self._active_render_workers[worker.request_id] = worker
        self._render_pool.start(worker)

    def _on_render_finished(self, request_id: int, html_doc: str, error_text: str) -> None:
        self._active_render_workers.pop(request_id, None)
        if request_id != self._render_request_id:
            # Superseded by a newer render request.
            return
        snapshot = self.state.snapshot()
        if error_text:
            self.statusBar().showMessage(f"Preview render failed: {error_text}", 5000)
            html_doc = self.renderer.placeholder_html(f"Could not render {snapshot.display_name}: {error_text}")
        base_url = QUrl.fromLocalFile(f"{snapshot.file_dir}/") if snapshot.is_open else QUrl()
        self.preview.setHtml(html_doc, base_url)

    def open_path(self, raw_path: str) -> None:
        """Open a file picked in this window (drag-and-drop or the open dialog)."""
        try:
            self.state.open_request(raw_path)
        except MdGlanceError as exc:
            logger.warning("Could not open %s: %s", raw_path, exc)
            self.statusBar().showMessage(str(exc), 5000)

    def _open_file_dialog(self) -> None:
        start_dir = self.state.snapshot().file_dir or str(Path.home())
        selected, _ = QFileDialog.getOpenFileName(self, "Open document", start_dir, OPEN_DIALOG_FILTER)
        if selected:
            self.open_path(selected)

    def _reload_current_file(self) -> None:
        snapshot = self.state.snapshot()
        if snapshot.is_open:
            self.open_path(snapshot.canonical_path)

    def _quit(self) -> None:
        self._quitting = True
        QApplication.instance().quit()

    def dragEnterEvent(self, event) -> None:  # noqa: N802
        mime = event.mimeData()
        urls = mime.urls() if mime.hasUrls() else []
        if any(url.isLocalFile() and has_supported_extension(url.toLocalFile()) for url in urls):
            event.acceptProposedAction()
        else:
            event.ignore()

    def dropEvent(self, event) -> None:  # noqa: N802
        for url in event.mimeData().urls():
            if url.isLocalFile():
                self.open_path(url.toLocalFile())
                event.acceptProposedAction()
                return
        event.ignore()

    def closeEvent(self, event) -> None:  # noqa: N802
        if self._quitting:
            super().closeEvent(event)
            return
        # Hide instead of closing so later launches can reuse this process.
        event.ignore()
        self.hide()


def run_daemon(state: DocumentState, config: AppConfig) -> int:
    """Become the long-lived instance: window, watcher and rendezvous server."""
    app = QApplication(sys.argv)
    app.setApplicationName("mdglance")
    app.setDesktopFileName("mdglance")
    app.setQuitOnLastWindowClosed(False)

    signals = CoreSignals()
    watcher = WatchController(state, on_change=signals.content_changed.emit)
    state.add_replace_listener(lambda snapshot: watcher.retarget(snapshot.canonical_path))
    state.add_replace_listener(signals.file_loaded.emit)

    server = InstanceServer(state.replace, on_activate=signals.activate_requested.emit)
    try:
        server.bind()
    except EndpointBusyError as exc:
        # Another launch won the startup race; hand the file over instead.
        forwarded = probe_and_forward(state.snapshot().canonical_path or None, endpoint=server.endpoint)
        if forwarded:
            return 0
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    window = GlanceWindow(state, signals, config)
    watcher.start(state.snapshot().canonical_path or None)
    server.start()
    window.show()
    try:
        return app.exec()
    finally:
        server.close()
        watcher.stop()
