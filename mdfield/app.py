#!/usr/bin/env python3
"""mdfield desktop host: edit markdown cells with a live, sanitized preview."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from PySide6 import QtAsyncio
from PySide6.QtCore import QObject, QRunnable, Qt, QThreadPool, QTimer, QUrl, Signal
from PySide6.QtWebEngineWidgets import QWebEngineView
from PySide6.QtWidgets import (
    QApplication,
    QCheckBox,
    QHBoxLayout,
    QLabel,
    QListWidget,
    QListWidgetItem,
    QMainWindow,
    QMessageBox,
    QPlainTextEdit,
    QPushButton,
    QSplitter,
    QVBoxLayout,
    QWidget,
)

from .config import AppConfig, config_file_path, load_config, save_config
from .pdf import stamp_page_numbers
from .renderer import MarkdownRenderer
from .session import SaveState, SessionController, SessionSnapshot, SwitchDecision
from .store import CellRef, JsonFileCellStore, RetryingCellStore

logger = logging.getLogger(__name__)

DEFAULT_STORE_NAME = "mdfield-cells.json"
PREVIEW_DEBOUNCE_MS = 300
STATUS_TEXT = {
    SaveState.CLEAN: "Saved",
    SaveState.DIRTY: "Unsaved changes",
    SaveState.SAVING: "Saving...",
    SaveState.ERROR: "Save failed",
}


class PdfExportWorkerSignals(QObject):
    finished = Signal(str, str)


class PdfExportWorker(QRunnable):
    """Stamp page numbers and write the exported PDF off the UI thread."""

    def __init__(self, output_path: Path, pdf_bytes: bytes):
        super().__init__()
        self.output_path = output_path
        self.pdf_bytes = pdf_bytes
        self.signals = PdfExportWorkerSignals()

    def run(self) -> None:
        try:
            self.output_path.write_bytes(stamp_page_numbers(self.pdf_bytes))
            self.signals.finished.emit(str(self.output_path), "")
        except Exception as exc:
            self.signals.finished.emit(str(self.output_path), str(exc))


class PreviewRenderWorkerSignals(QObject):
    finished = Signal(int, str, str)


class PreviewRenderWorker(QRunnable):
    """Render the preview page off the UI thread; PlantUML runs a subprocess."""

    def __init__(self, renderer: MarkdownRenderer, markdown_text: str, title: str, request_id: int):
        super().__init__()
        self.renderer = renderer
        self.markdown_text = markdown_text
        self.title = title
        self.request_id = request_id
        self.signals = PreviewRenderWorkerSignals()

    def run(self) -> None:
        try:
            html_doc = self.renderer.render_document(self.markdown_text, self.title)
            self.signals.finished.emit(self.request_id, html_doc, "")
        except Exception as exc:
            self.signals.finished.emit(self.request_id, "", str(exc))


class CellEditorWindow(QMainWindow):
    def __init__(self, store_path: Path, config: AppConfig, config_path: Path):
        super().__init__()
        self.store_path = store_path
        self.config = config
        self.config_path = config_path
        self.cell_store = JsonFileCellStore(store_path)
        self.renderer = MarkdownRenderer(config)
        self.controller = SessionController(
            RetryingCellStore(self.cell_store),
            autosave_delay=config.autosave_delay,
            autosave_enabled=config.autosave_enabled,
        )
        self._tasks: set[asyncio.Future] = set()
        self._applying_snapshot = False
        self._prompt_open = False
        self._close_ready = False
        self._pdf_pool = QThreadPool(self)
        self._pdf_pool.setMaxThreadCount(1)
        self._active_pdf_workers: set[PdfExportWorker] = set()
        # One render thread: the renderer and its PlantUML cache are not shared concurrently.
        self._render_pool = QThreadPool(self)
        self._render_pool.setMaxThreadCount(1)
        self._render_request_id = 0
        self._active_render_workers: set[PreviewRenderWorker] = set()

        self.preview_timer = QTimer(self)
        self.preview_timer.setSingleShot(True)
        self.preview_timer.setInterval(PREVIEW_DEBOUNCE_MS)
        self.preview_timer.timeout.connect(self._refresh_preview)

        self.setWindowTitle("mdfield")
        self.resize(1400, 900)

        self.cell_list = QListWidget()
        self.cell_list.currentItemChanged.connect(self._on_cell_selected)
        self.editor = QPlainTextEdit()
        self.editor.setPlaceholderText("Markdown...")
        self.editor.textChanged.connect(self._on_editor_changed)
        self.preview = QWebEngineView()

        self.save_btn = QPushButton("Save")
        self.save_btn.clicked.connect(lambda _checked=False: self._spawn(self.controller.save()))
        self.autosave_box = QCheckBox("Autosave")
        self.autosave_box.setChecked(config.autosave_enabled)
        self.autosave_box.toggled.connect(self.controller.set_autosave_enabled)
        self.pdf_btn = QPushButton("PDF")
        self.pdf_btn.clicked.connect(self._export_pdf)
        self.state_label = QLabel()

        top_bar = QHBoxLayout()
        top_bar.setContentsMargins(0, 0, 0, 0)
        top_bar.addWidget(self.save_btn)
        top_bar.addWidget(self.autosave_box)
        top_bar.addWidget(self.pdf_btn)
        top_bar.addWidget(self.state_label, 1, Qt.AlignmentFlag.AlignRight)

        splitter = QSplitter(Qt.Horizontal)
        splitter.addWidget(self.cell_list)
        splitter.addWidget(self.editor)
        splitter.addWidget(self.preview)
        splitter.setChildrenCollapsible(False)
        splitter.setStretchFactor(0, 1)
        splitter.setStretchFactor(1, 3)
        splitter.setStretchFactor(2, 3)

        central = QWidget()
        layout = QVBoxLayout(central)
        layout.addLayout(top_bar)
        layout.addWidget(splitter, 1)
        self.setCentralWidget(central)

        self._populate_cells()
        self.controller.subscribe(self._on_session_snapshot)
        self.statusBar().showMessage(str(store_path))
        QTimer.singleShot(0, self._start_session)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _populate_cells(self) -> None:
        try:
            refs = self.cell_store.records()
        except Exception as exc:
            QMessageBox.critical(self, "Cannot read cells", str(exc))
            refs = []
        for ref in refs:
            item = QListWidgetItem(str(ref))
            item.setData(Qt.ItemDataRole.UserRole, ref)
            self.cell_list.addItem(item)

    def _item_for(self, ref: CellRef | None) -> QListWidgetItem | None:
        for row in range(self.cell_list.count()):
            item = self.cell_list.item(row)
            if item.data(Qt.ItemDataRole.UserRole) == ref:
                return item
        return None

    def _start_session(self) -> None:
        initial = None
        if self.config.last_record_id and self.config.last_field_id:
            initial = CellRef(self.config.last_record_id, self.config.last_field_id)
        if self._item_for(initial) is None and self.cell_list.count():
            initial = self.cell_list.item(0).data(Qt.ItemDataRole.UserRole)
        self._spawn(self.controller.start(initial))

    def _on_cell_selected(self, current: QListWidgetItem | None, _previous) -> None:
        if self._applying_snapshot or current is None:
            return
        self._spawn(self.controller.request_cell_switch(current.data(Qt.ItemDataRole.UserRole)))

    def _on_editor_changed(self) -> None:
        if self._applying_snapshot:
            return
        self.controller.set_content(self.editor.toPlainText())
        self.preview_timer.start()

    def _on_session_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._applying_snapshot = True
        try:
            if self.editor.toPlainText() != snapshot.content:
                self.editor.setPlainText(snapshot.content)
                self.preview_timer.start()
            # The list follows the bound cell until a switch is decided.
            item = self._item_for(snapshot.active_cell)
            if item is not None and not snapshot.prompt_pending:
                self.cell_list.setCurrentItem(item)
        finally:
            self._applying_snapshot = False

        status = STATUS_TEXT[snapshot.save_state]
        if snapshot.error:
            status = f"{status}: {snapshot.error}"
        self.state_label.setText(status)
        self.save_btn.setEnabled(snapshot.save_state in (SaveState.DIRTY, SaveState.ERROR))
        title = str(snapshot.active_cell) if snapshot.active_cell else "untitled"
        marker = "*" if snapshot.save_state is not SaveState.CLEAN else ""
        self.setWindowTitle(f"mdfield - {title}{marker}")

        if snapshot.prompt_pending and not self._prompt_open:
            QTimer.singleShot(0, self._show_switch_prompt)

    def _show_switch_prompt(self) -> None:
        snapshot = self.controller.snapshot()
        if not snapshot.prompt_pending or self._prompt_open:
            return
        self._prompt_open = True
        try:
            reply = QMessageBox.question(
                self,
                "Unsaved changes",
                f"Save changes to {snapshot.active_cell} before opening {snapshot.pending_cell}?",
                QMessageBox.StandardButton.Save | QMessageBox.StandardButton.Discard,
                QMessageBox.StandardButton.Save,
            )
        finally:
            self._prompt_open = False
        decision = SwitchDecision.SAVE_THEN_SWITCH
        if reply != QMessageBox.StandardButton.Save:
            decision = SwitchDecision.DISCARD
        self._spawn(self._resolve_prompt(decision))

    async def _resolve_prompt(self, decision: SwitchDecision) -> None:
        if not await self.controller.resolve_switch_prompt(decision):
            snapshot = self.controller.snapshot()
            if snapshot.prompt_pending and snapshot.save_state is SaveState.ERROR:
                QMessageBox.warning(self, "Save failed", snapshot.error or "The cell could not be saved.")
                QTimer.singleShot(0, self._show_switch_prompt)

    def _refresh_preview(self) -> None:
        snapshot = self.controller.snapshot()
        title = str(snapshot.active_cell) if snapshot.active_cell else "untitled"
        # Queued renders are superseded; a running one is ignored when it finishes.
        self._render_request_id += 1
        self._render_pool.clear()
        worker = PreviewRenderWorker(self.renderer, snapshot.content, title, self._render_request_id)
        self._active_render_workers.add(worker)
        worker.signals.finished.connect(self._on_preview_render_finished)
        self._render_pool.start(worker)

    def _on_preview_render_finished(self, request_id: int, html_doc: str, error_text: str) -> None:
        # Workers cleared from the queue never report, so drop every older one too.
        self._active_render_workers = {worker for worker in self._active_render_workers if worker.request_id > request_id}
        if request_id != self._render_request_id:
            return
        if error_text:
            self.statusBar().showMessage(f"Preview render failed: {error_text}", 5000)
            return
        self.preview.setHtml(html_doc, QUrl.fromLocalFile(str(self.store_path.parent) + "/"))

    def _export_pdf(self) -> None:
        snapshot = self.controller.snapshot()
        if snapshot.active_cell is None:
            QMessageBox.information(self, "No cell selected", "Select a cell before exporting to PDF.")
            return
        if self._active_pdf_workers:
            self.statusBar().showMessage("PDF export already in progress", 3000)
            return
        ref = snapshot.active_cell
        output_path = self.store_path.parent / f"{ref.record_id}-{ref.field_id}.pdf"
        self.pdf_btn.setEnabled(False)
        self.statusBar().showMessage(f"Preparing PDF for {ref}...")
        self.preview.page().printToPdf(lambda pdf_data, target=output_path: self._on_pdf_render_ready(target, pdf_data))

    def _on_pdf_render_ready(self, output_path: Path, pdf_data) -> None:
        raw_pdf = bytes(pdf_data) if pdf_data is not None else b""
        if not raw_pdf:
            self.pdf_btn.setEnabled(True)
            QMessageBox.critical(self, "PDF export failed", "Qt WebEngine returned an empty PDF payload")
            return
        worker = PdfExportWorker(output_path, raw_pdf)
        self._active_pdf_workers.add(worker)
        worker.signals.finished.connect(
            lambda path_text, error_text, current=worker: self._on_pdf_export_finished(current, path_text, error_text)
        )
        self._pdf_pool.start(worker)
        self.statusBar().showMessage(f"Writing numbered PDF: {output_path.name}...")

    def _on_pdf_export_finished(self, worker: PdfExportWorker, path_text: str, error_text: str) -> None:
        self._active_pdf_workers.discard(worker)
        self.pdf_btn.setEnabled(True)
        if error_text:
            QMessageBox.critical(self, "PDF export failed", f"Could not create PDF:\n{path_text}\n\n{error_text}")
            self.statusBar().showMessage(f"PDF export failed: {error_text}", 5000)
            return
        self.statusBar().showMessage(f"Exported PDF: {path_text}", 5000)

    def _persist_config(self) -> None:
        snapshot = self.controller.snapshot()
        self.config.autosave_enabled = snapshot.autosave_enabled
        if snapshot.active_cell is not None:
            self.config.last_record_id = snapshot.active_cell.record_id
            self.config.last_field_id = snapshot.active_cell.field_id
        self.config.store_path = str(self.store_path)
        save_config(self.config, self.config_path)

    async def _flush_and_close(self) -> None:
        if not await self.controller.close(save_pending=True):
            snapshot = self.controller.snapshot()
            reply = QMessageBox.warning(
                self,
                "Save failed",
                f"{snapshot.error or 'The cell could not be saved.'}\n\nClose anyway and lose the unsaved changes?",
                QMessageBox.StandardButton.Discard | QMessageBox.StandardButton.Cancel,
                QMessageBox.StandardButton.Cancel,
            )
            if reply != QMessageBox.StandardButton.Discard:
                return
            await self.controller.close()
        self._close_ready = True
        self.close()

    def closeEvent(self, event) -> None:  # noqa: N802
        if self._close_ready:
            super().closeEvent(event)
            return
        self._persist_config()
        event.ignore()
        self._spawn(self._flush_and_close())


def _parse_cell(text: str) -> CellRef:
    record_id, sep, field_id = text.partition("/")
    if not sep or not record_id or not field_id:
        raise argparse.ArgumentTypeError("expected RECORD/FIELD")
    return CellRef(record_id, field_id)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mdfield",
        description="Edit markdown cells with a live, sanitized preview.",
    )
    parser.add_argument(
        "store",
        nargs="?",
        default=None,
        help=f"JSON cell file (default: store_path from ~/.mdfield.cfg, or ./{DEFAULT_STORE_NAME}).",
    )
    parser.add_argument("--cell", type=_parse_cell, default=None, help="Cell to open first, as RECORD/FIELD.")
    parser.add_argument("--no-autosave", action="store_true", help="Start with autosave turned off.")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="Log more (repeat for debug output).")
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg_path = config_file_path()
    config = load_config(cfg_path)
    if args.no_autosave:
        config.autosave_enabled = False
    if args.cell is not None:
        config.last_record_id = args.cell.record_id
        config.last_field_id = args.cell.field_id

    store_text = args.store or config.store_path or DEFAULT_STORE_NAME
    store_path = Path(store_text).expanduser().resolve()
    if store_path.is_dir():
        print(f"Store path is a directory: {store_path}", file=sys.stderr)
        return 2
    if not store_path.parent.is_dir():
        print(f"Directory does not exist: {store_path.parent}", file=sys.stderr)
        return 2

    app = QApplication(sys.argv[:1])
    app.setApplicationName("mdfield")
    app.setDesktopFileName("mdfield")
    window = CellEditorWindow(store_path, config, cfg_path)
    window.show()
    QtAsyncio.run(keep_running=True, quit_qapp=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
